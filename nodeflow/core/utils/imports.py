"""
Module import utilities for the CLI.

- import_by_locator(): import ``package.module`` or ``path/to/file.py``
- setup_sys_path_from_cwd(): add cwd to sys.path when it is a project root

The caller controls sys.path; nothing walks up parent directories.
"""

from __future__ import annotations

import importlib
import importlib.util
import hashlib
import os
import sys
from types import ModuleType

from nodeflow.core.logging import get_logger

logger = get_logger('imports')

_PROJECT_MARKERS = ('pyproject.toml', 'setup.cfg', 'setup.py')


def setup_sys_path_from_cwd() -> str | None:
    """Add cwd to sys.path if cwd itself holds a project marker file."""
    cwd = os.getcwd()
    has_marker = any(os.path.exists(os.path.join(cwd, m)) for m in _PROJECT_MARKERS)
    if has_marker and cwd not in sys.path:
        sys.path.insert(0, cwd)
        logger.debug(f'Added cwd to sys.path: {cwd}')
        return cwd
    return None


def import_file_path(file_path: str) -> ModuleType:
    """Import a module from a .py file, adding its directory to sys.path."""
    file_path = os.path.abspath(file_path)
    parent = os.path.dirname(file_path)
    if parent not in sys.path:
        sys.path.insert(0, parent)

    stem = os.path.splitext(os.path.basename(file_path))[0]
    # Stable, collision-free name for modules loaded by path
    digest = hashlib.sha1(file_path.encode('utf-8')).hexdigest()[:8]
    module_name = f'{stem}_{digest}'
    if module_name in sys.modules:
        return sys.modules[module_name]

    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ImportError(f'Cannot load module from {file_path}')
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)
    return module


def import_by_locator(module_path: str) -> ModuleType:
    """Import a dotted module path or a .py file path."""
    if module_path.endswith('.py') or os.sep in module_path:
        return import_file_path(module_path)
    return importlib.import_module(module_path)
