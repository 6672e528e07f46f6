# shipline/__main__.py
"""Entry point for `python -m shipline`."""

from shipline.cli import app

if __name__ == "__main__":
    app()
