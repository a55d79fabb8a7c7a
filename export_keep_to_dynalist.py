#!/usr/bin/env python
"""
Entry point that delegates to keep_to_dynalist.cli.
"""
from __future__ import annotations

import sys

from keep_to_dynalist.cli import main


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
