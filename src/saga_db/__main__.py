# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""CLI entry point for saga-db (saga-db command).

Usage:
    saga-db --help
    saga-db --db /data/saga.db tables
    saga-db --package myapp.migrations migrate --pretend
"""

from .cli import main

if __name__ == "__main__":
    main()
