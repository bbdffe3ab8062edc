"""Cloud-init NoCloud seed image generation."""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import List, Sequence

from provisioner.constants import CLOUD_INIT_VOLUME_LABEL, ISO_SOURCE_DATE_EPOCH, ISO_TOOL
from provisioner.exceptions import CloudInitError
from provisioner.utils import get_env, log, run

USER_DATA_FILE = "user-data"
META_DATA_FILE = "meta-data"


def render_meta_data(name: str) -> str:
    return f"instance-id: {name}\nlocal-hostname: {name}\n"


def find_iso_tool() -> str:
    """Return the path of the xorriso executable.

    ``PROVISIONER_ISO_TOOL`` may point at a specific xorriso binary.
    """
    tool = (get_env("PROVISIONER_ISO_TOOL") or "").strip() or ISO_TOOL
    if Path(tool).name != ISO_TOOL:
        raise CloudInitError(
            f"Unsupported ISO tool '{tool}': only {ISO_TOOL} builds reproducible cloud-init images"
        )
    tool_path = shutil.which(tool)
    if not tool_path:
        raise CloudInitError(f"{ISO_TOOL} not found (looked for '{tool}'); it is required to build cloud-init images")
    return tool_path


def _iso_command(tool_path: str, output: Path, files: Sequence[Path]) -> List[str]:
    cmd = [tool_path, "-as", "mkisofs", "-o", str(output), "-V", CLOUD_INIT_VOLUME_LABEL, "-J", "-r"]
    cmd.extend(str(path) for path in files)
    return cmd


def build_cloud_init_iso(name: str, user_data: str) -> bytes:
    """Build an ISO-9660 ``cidata`` image holding ``user-data`` and ``meta-data``.

    File timestamps and ``SOURCE_DATE_EPOCH`` are pinned, so the same name and
    user data always produce the same bytes.
    """
    tool_path = find_iso_tool()
    with tempfile.TemporaryDirectory(prefix="cloudinit-") as tmpdir:
        tmp = Path(tmpdir)
        user_data_path = tmp / USER_DATA_FILE
        meta_data_path = tmp / META_DATA_FILE
        user_data_path.write_bytes(user_data.encode("utf-8"))
        meta_data_path.write_bytes(render_meta_data(name).encode("utf-8"))
        for path in (user_data_path, meta_data_path):
            os.utime(path, (ISO_SOURCE_DATE_EPOCH, ISO_SOURCE_DATE_EPOCH))

        output = tmp / "seed.iso"
        env = dict(os.environ, SOURCE_DATE_EPOCH=str(ISO_SOURCE_DATE_EPOCH))
        cmd = _iso_command(tool_path, output, [user_data_path, meta_data_path])
        try:
            run(cmd, capture_output=True, env=env)
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or "").strip()
            raise CloudInitError(f"{ISO_TOOL} failed building cloud-init ISO for '{name}': {detail}") from exc
        except OSError as exc:
            raise CloudInitError(f"Unable to run {tool_path}: {exc}") from exc
        data = output.read_bytes()

    log("DEBUG", f"Built cloud-init ISO for {name} ({len(data)} bytes)")
    return data
