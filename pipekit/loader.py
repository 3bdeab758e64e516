"""Plugin discovery by folder scanning.

Each `*.py` file in the plugin directory is one plugin. A file must define a
class named `Pipe`; its module docstring may carry frontmatter:

    \"\"\"
    title: OpenAI Manifold
    author: someone
    version: 0.1.0
    \"\"\"

The plugin id is the file stem, so model ids exposed by the plugin are
namespaced as `<file stem>.<model id>`.
"""

import ast
import importlib.util
import logging
import sys
from pathlib import Path
from typing import Dict, List, Union

from pipekit.constants import FRONTMATTER_KEYS, HOST_NAME, PLUGIN_MODULE_NAMESPACE
from pipekit.contract import PluginDefinition, describe_plugin
from pipekit.errors import ContractViolation

logger = logging.getLogger(HOST_NAME)


def parse_frontmatter(source: str) -> Dict[str, str]:
    """Read `key: value` lines from a module docstring.

    Only the leading docstring is considered and unknown keys are kept; a
    file without a docstring, or one that does not parse, has no metadata.
    """
    try:
        docstring = ast.get_docstring(ast.parse(source))
    except SyntaxError:
        return {}
    if not docstring:
        return {}

    metadata: Dict[str, str] = {}
    for line in docstring.splitlines():
        key, sep, value = line.partition(":")
        key = key.strip().lower()
        if not sep or not key or " " in key:
            continue
        metadata[key] = value.strip()
    unknown = sorted(set(metadata) - set(FRONTMATTER_KEYS))
    if unknown:
        logger.debug("Non-standard frontmatter keys: %s", unknown)
    return metadata


def load_plugin_file(path: Union[str, Path]) -> PluginDefinition:
    """Import one plugin file and describe its Pipe class.

    Raises ContractViolation when the module defines no Pipe class; import
    and syntax errors from the module itself propagate.
    """
    path = Path(path)
    plugin_id = path.stem
    source = path.read_text(encoding="utf-8")
    metadata = parse_frontmatter(source)

    module_name = f"{PLUGIN_MODULE_NAMESPACE}.{plugin_id}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise ContractViolation(f"{path}: cannot be loaded as a Python module")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(module_name, None)
        raise

    pipe_class = getattr(module, "Pipe", None)
    if pipe_class is None:
        sys.modules.pop(module_name, None)
        raise ContractViolation(f"{path}: no 'Pipe' class defined")

    return describe_plugin(pipe_class, plugin_id, metadata=metadata, source=str(path))


def discover_plugins(directory: Union[str, Path]) -> List[PluginDefinition]:
    """Load every plugin file in a directory (non-recursive).

    Files starting with `_` are skipped. A file that fails to import or does
    not satisfy the contract is logged and skipped; the rest still load.
    """
    directory = Path(directory)
    discovered: List[PluginDefinition] = []

    if not directory.is_dir():
        logger.warning("Plugin directory does not exist: %s", directory)
        return discovered

    for py_file in sorted(directory.glob("*.py")):
        if py_file.name.startswith("_"):
            continue
        try:
            definition = load_plugin_file(py_file)
        except ContractViolation as e:
            logger.warning("Skipping %s: %s", py_file.name, e)
            continue
        except ImportError as e:
            # Usually a missing optional requirement of the plugin
            logger.warning("Import error loading plugin %s: %s", py_file.name, e)
            continue
        except SyntaxError as e:
            logger.error("Syntax error in plugin file %s: %s", py_file, e)
            continue
        except Exception as e:
            logger.error("Error loading plugin %s: %s", py_file.name, e)
            continue

        logger.info(
            "Discovered plugin %s (%s) capabilities=%s",
            definition.plugin_id,
            definition.name,
            sorted(c.value for c in definition.capabilities),
        )
        discovered.append(definition)

    return discovered
