"""
Entry point for running the hinge_validation package.

Usage:
    python -m hinge_validation [command] [options]
"""
from .cli import main

if __name__ == "__main__":
    main()
