"""
Module import utilities for the CLI and task discovery.

- import_by_path(): dotted module path or .py file path
- import_file_path(): import a standalone file with its parent on sys.path
- setup_sys_path_from_cwd(): add cwd to sys.path when it is a project root

The caller controls sys.path and module naming; nothing is guessed from
parent directories.
"""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import os
import sys
from typing import Any

from pendq.core.logging import get_logger

logger = get_logger('imports')

_PROJECT_MARKERS = ('pyproject.toml', 'setup.cfg', 'setup.py')


def is_file_path(path: str) -> bool:
    """Check if path looks like a file path (vs dotted module path)."""
    return path.endswith('.py') or os.path.sep in path or '/' in path


def find_project_root(start_dir: str) -> str | None:
    """Return start_dir if it directly contains a project marker file.

    Parent directories are not searched.
    """
    start_dir = os.path.abspath(start_dir)
    for marker in _PROJECT_MARKERS:
        if os.path.exists(os.path.join(start_dir, marker)):
            return start_dir
    return None


def setup_sys_path_from_cwd() -> str | None:
    """If cwd is a project root, put it on sys.path. Returns cwd when added."""
    cwd = os.getcwd()
    if find_project_root(cwd) and cwd not in sys.path:
        sys.path.insert(0, cwd)
        logger.debug(f'Added cwd to sys.path: {cwd}')
        return cwd
    return None


def _synthetic_module_name(path: str) -> str:
    """Stable module name for a standalone file, derived from its realpath."""
    realpath = os.path.realpath(path)
    return f'pendq_dynamic_{hashlib.sha256(realpath.encode()).hexdigest()[:12]}'


def import_file_path(file_path: str, module_name: str | None = None) -> Any:
    """
    Import a module from a file path, adding its directory to sys.path.

    A file that is already imported (under any name) is returned as-is.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ImportError: If the module can't be loaded
    """
    file_path = os.path.realpath(file_path)
    if not os.path.exists(file_path):
        raise FileNotFoundError(f'Module file not found: {file_path}')

    for mod in list(sys.modules.values()):
        mod_file = getattr(mod, '__file__', None)
        if mod_file and os.path.realpath(mod_file) == file_path:
            return mod

    parent_dir = os.path.dirname(file_path)
    if parent_dir not in sys.path:
        sys.path.insert(0, parent_dir)

    module_name = module_name or _synthetic_module_name(file_path)
    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ImportError(f'Could not load module from path: {file_path}')

    mod = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = mod
    try:
        spec.loader.exec_module(mod)
    except BaseException:
        sys.modules.pop(module_name, None)
        raise
    return mod


def import_by_path(path: str) -> Any:
    """Import a dotted module path or a .py file path."""
    if is_file_path(path):
        return import_file_path(path)
    return importlib.import_module(path)
