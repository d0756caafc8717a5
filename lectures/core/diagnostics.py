"""
Diagnostics: tool version detection and startup dependency checks.
"""

import logging
import subprocess

from lectures.core.security_utils import run_subprocess_capture

logger = logging.getLogger(__name__)

# (binary, version flag); missing required tools are fatal at startup
REQUIRED_TOOLS = (("ffmpeg", "-version"), ("ffprobe", "-version"))
OPTIONAL_TOOLS = (("soffice", "--version"), ("gs", "--version"), ("whisper", "--help"))


def get_tool_version(binary: str, flag: str = "-version") -> str:
    """Return the first line of ``binary flag``, or an error message."""
    try:
        result = run_subprocess_capture([binary, flag], timeout=10)
        if result.returncode == 0:
            lines = (result.stdout or "").strip().splitlines()
            return lines[0] if lines else "Installed"
        return f"Error (rc={result.returncode})"
    except FileNotFoundError:
        return "Not installed"
    except (OSError, subprocess.TimeoutExpired) as e:
        return f"Error: {e}"


def is_installed(version: str) -> bool:
    return version != "Not installed" and not version.startswith("Error")


def check_dependencies() -> dict:
    """
    Check external tools.
    Returns {"missing_required": [...], "missing_optional": [...]}.
    """
    missing_required = [name for name, flag in REQUIRED_TOOLS
                        if not is_installed(get_tool_version(name, flag))]
    missing_optional = [name for name, flag in OPTIONAL_TOOLS
                        if not is_installed(get_tool_version(name, flag))]
    return {
        "missing_required": missing_required,
        "missing_optional": missing_optional,
    }


def get_diagnostics() -> dict:
    """Gather all diagnostic information."""
    return {
        f"{name}_version": get_tool_version(name, flag)
        for name, flag in REQUIRED_TOOLS + OPTIONAL_TOOLS
    }
