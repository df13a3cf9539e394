from __future__ import annotations

import os
import sys


def _ensure_project_root_on_path() -> None:
    # The repository root (containing `form_cleaner/` and `tests/`) must be importable
    # even when pytest is started from somewhere else.
    tests_dir = os.path.abspath(os.path.dirname(__file__))
    project_root = os.path.dirname(tests_dir)
    for path in (tests_dir, project_root):
        if path not in sys.path:
            sys.path.insert(0, path)


_ensure_project_root_on_path()
