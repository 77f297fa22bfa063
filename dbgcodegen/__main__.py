#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
dbgcodegen/__main__.py
======================

``python -m dbgcodegen <command> [options]``; see :mod:`dbgcodegen.main`.
"""

from .main import main

if __name__ == "__main__":
    raise SystemExit(main())
