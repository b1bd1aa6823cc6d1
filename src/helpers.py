#!/usr/bin/env python3
# Copyright 2023 Canonical
# See LICENSE file for licensing details.

"""General purpose helper functions for managing files written by the charm."""

import os
import pathlib


def save(data: str, path: str, mode: int = 0o600) -> bool:
    """Write data to path if it differs, returning whether it changed."""
    p = pathlib.Path(path)
    if p.exists() and p.read_text() == data:
        fchange(path, mode)
        return False

    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(data)
    fchange(path, mode)
    return True


def fchange(path: str, mode: int = 0o600) -> None:
    """Change file ownership to root and set permissions."""
    os.chown(path, 0, 0)
    os.chmod(path, mode)
