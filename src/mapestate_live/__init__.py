"""MapEstate live property updates with an offline cache proxy."""


def main() -> None:
    from .server import main as _main

    _main()


__all__ = ["main"]
