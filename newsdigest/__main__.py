"""
Entry point for running as module: python -m newsdigest
"""

import sys
from .cli import main

if __name__ == "__main__":
    sys.exit(main())
