"""
Entrypoint for running the CI CLI as a module.

Usage:
    python -m ci_client run .github/workflows/rust.yml --branch main
"""

from .cli import main

if __name__ == "__main__":
    main()
