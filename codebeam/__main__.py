"""Entry point for ``python -m codebeam``."""
from .cli import app

if __name__ == "__main__":
    app()
