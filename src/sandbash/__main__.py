"""Entry point for running the server as a module.

Usage:
    python -m sandbash
"""

from sandbash.server import main

if __name__ == "__main__":
    main()
