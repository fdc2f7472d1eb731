#!/usr/bin/env python3
"""Entry point for running the broadcast daemon as a module."""

from broadcaster.daemon import main

if __name__ == "__main__":
    main()
