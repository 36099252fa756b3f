"""
Entry point for running groupcast as a module: python -m groupcast
"""

from groupcast.cli.commands import app

if __name__ == "__main__":
    app()
