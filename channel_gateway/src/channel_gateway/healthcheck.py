"""
Healthcheck module for the gateway container.

Verifies that the gateway package and its dependencies import, and that
the configuration loaded from the environment is valid.  It does not
check the channel client connection.
"""

import sys


def main() -> None:
    try:
        import channel_gateway  # noqa: F401
        from channel_gateway.config import load_config

        load_config()
    except Exception as exc:  # pragma: no cover - healthcheck only
        print(f"Healthcheck error: {exc}", file=sys.stderr)
        sys.exit(1)
    print("ok")


if __name__ == "__main__":
    main()
