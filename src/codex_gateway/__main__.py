"""Entry point for ``python -m codex_gateway``."""

from codex_gateway.cli import app

if __name__ == "__main__":
    app()
