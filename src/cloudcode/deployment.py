"""Deployment loader.

A deployment is a Python file (or importable module) defining::

    def deploy(cloud):
        @cloud.define("averageStars")
        def average_stars(request, response):
            ...

It is loaded once at process start; ``deploy`` registers the handlers.
"""

from __future__ import annotations

import importlib
import importlib.util
import logging
import sys
from pathlib import Path
from types import ModuleType
from typing import TYPE_CHECKING

from cloudcode.exceptions import DeploymentError

if TYPE_CHECKING:
    from cloudcode.cloud import Cloud

logger = logging.getLogger(__name__)

ENTRY_POINT = "deploy"


def _load_file(path: Path) -> ModuleType:
    if not path.is_file():
        raise DeploymentError(f"Deployment file not found: {path}")
    module_name = f"cloudcode_deploy_{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise DeploymentError(f"Could not create module spec for: {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        sys.modules.pop(module_name, None)
        raise DeploymentError(f"Failed to load deployment {path}: {exc}") from exc
    return module


def _load_module(name: str) -> ModuleType:
    try:
        return importlib.import_module(name)
    except ImportError as exc:
        raise DeploymentError(f"Cannot import deployment module {name!r}: {exc}") from exc


def load_deployment(cloud: Cloud, target: str | Path) -> ModuleType:
    """Load ``target`` and call its ``deploy(cloud)``.

    Args:
        cloud: Engine to register handlers on.
        target: Path to a ``.py`` file, or a dotted module name.

    Returns:
        The loaded module.

    Raises:
        DeploymentError: If the target cannot be loaded, has no
            ``deploy`` callable, or ``deploy`` raises.
    """
    target_str = str(target)
    if isinstance(target, Path) or target_str.endswith(".py") or "/" in target_str:
        module = _load_file(Path(target_str))
    else:
        module = _load_module(target_str)

    entry = getattr(module, ENTRY_POINT, None)
    if not callable(entry):
        raise DeploymentError(f"{target_str} does not define {ENTRY_POINT}(cloud)")

    before = len(cloud.registry)
    try:
        entry(cloud)
    except DeploymentError:
        raise
    except Exception as exc:
        raise DeploymentError(f"{target_str}: {ENTRY_POINT}() failed: {exc}") from exc

    logger.info(
        "Loaded deployment %s (%d handlers registered)", target_str, len(cloud.registry) - before
    )
    return module
