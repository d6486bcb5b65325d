from importlib.metadata import PackageNotFoundError, version


def provider_version() -> str:
    try:
        return version("daytona-provider")
    except PackageNotFoundError:
        return "0.0.0+dev"
