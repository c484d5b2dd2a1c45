#!/usr/bin/env python3
"""
Entry point for fipctl.
"""

import sys

from fip_controller.cli.cli import main

if __name__ == "__main__":
    sys.exit(main())
