"""Default filesystem locations for engine scratch state."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Mapping


def sandbash_home(environ: Mapping[str, str] | None = None) -> Path:
    env = os.environ if environ is None else environ
    env_home = env.get("SANDBASH_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path(tempfile.gettempdir()) / "sandbash"


def contexts_dir_default(environ: Mapping[str, str] | None = None) -> Path:
    return sandbash_home(environ) / "contexts"
