"""
Entry point for running SecureBackup as a module.

Usage:
    python -m securebackup [command] [options]
"""

import sys

from securebackup.cli import main

if __name__ == "__main__":
    sys.exit(main())
