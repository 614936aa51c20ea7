"""
viralcrawl CLI Entry Point

Allows running the package as a module: python -m viralcrawl
"""

from viralcrawl.cli import main

if __name__ == "__main__":
    main()
