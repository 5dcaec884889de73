import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/data")


def _default_root_paths():
    if _is_container_runtime():
        return {
            "data": Path("/data"),
            "outputs": Path("/downloads"),
            "logs": Path("/logs"),
            "inputs": Path("/inputs"),
        }
    base = PROJECT_ROOT / "data"
    return {
        "data": base,
        "outputs": base / "outputs",
        "logs": base / "logs",
        "inputs": base / "inputs",
    }


_DEFAULTS = _default_root_paths()

DATA_DIR = Path(os.environ.get("MEDIAFLOW_DATA_DIR", _DEFAULTS["data"])).resolve()
OUTPUT_DIR = Path(os.environ.get("MEDIAFLOW_OUTPUT_DIR", _DEFAULTS["outputs"])).resolve()
TEMP_DIR = Path(os.environ.get("MEDIAFLOW_TEMP_DIR", DATA_DIR / "tmp")).resolve()
LOG_DIR = Path(os.environ.get("MEDIAFLOW_LOG_DIR", _DEFAULTS["logs"])).resolve()
LOCAL_INPUTS_DIR = Path(os.environ.get("MEDIAFLOW_LOCAL_INPUTS_DIR", _DEFAULTS["inputs"])).resolve()


@dataclass(frozen=True)
class EnginePaths:
    output_dir: str
    temp_dir: str
    log_dir: str
    local_inputs_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def resolve_dir(path, base_dir):
    if not path:
        return base_dir
    if os.path.isabs(path):
        resolved = os.path.abspath(path)
    else:
        resolved = os.path.abspath(os.path.join(base_dir, path))
    if not _is_within_base(resolved, base_dir):
        raise ValueError(f"Path must be within base directory: {base_dir}")
    return resolved


def resolve_local_input(path, base_dir=None):
    """Resolve a local media path and require it to exist under the inputs root."""
    base = str(base_dir or LOCAL_INPUTS_DIR)
    resolved = resolve_dir(path, base)
    if not os.path.isfile(resolved):
        raise FileNotFoundError(f"Local input not found: {path}")
    return resolved


def build_engine_paths(output_dir=None, temp_dir=None, log_dir=None, local_inputs_dir=None):
    output_dir = Path(output_dir or OUTPUT_DIR)
    temp_dir = Path(temp_dir or TEMP_DIR)
    log_dir = Path(log_dir or LOG_DIR)
    local_inputs_dir = Path(local_inputs_dir or LOCAL_INPUTS_DIR)

    for d in (output_dir, temp_dir, log_dir, local_inputs_dir):
        ensure_dir(d)

    return EnginePaths(
        output_dir=str(output_dir),
        temp_dir=str(temp_dir),
        log_dir=str(log_dir),
        local_inputs_dir=str(local_inputs_dir),
    )
