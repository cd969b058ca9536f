"""
talos_provisioner/utils/ephemeral_file.py

Async context manager that materializes secret material as files in a
memory-backed directory (`/dev/shm` by default) for APIs that only accept
paths, such as `ssl.SSLContext.load_cert_chain`.

Every file is written with mode 0600 and the whole directory is removed on
exit, including when the body raises or is cancelled.
"""

import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict

import aiofiles


@asynccontextmanager
async def ephemeral_files(
    contents: Dict[str, bytes],
    *,
    prefix: str = "ephemeral-",
    parent_dir: str = "/dev/shm",
) -> AsyncGenerator[Dict[str, str], None]:
    """
    Write each entry of `contents` to its own file in a fresh private directory.

    Args:
        contents: Mapping of file name -> bytes to write.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where to create the directory. Falls back to the system
            temp directory when it does not exist.

    Yields:
        Dict[str, str]: Mapping of file name -> absolute path.

    Raises:
        ValueError: If a file name contains a path separator.
    """
    if any(os.sep in name or name in ("", ".", "..") for name in contents):
        raise ValueError("Ephemeral file names must be plain file names.")

    base = parent_dir if os.path.isdir(parent_dir) else None
    ephemeral_dir = tempfile.mkdtemp(dir=base, prefix=prefix)

    try:
        paths = {name: os.path.join(ephemeral_dir, name) for name in contents}
        for name, data in contents.items():
            fd = os.open(paths[name], os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            os.close(fd)
            async with aiofiles.open(paths[name], "wb") as handle:
                await handle.write(data)
        yield paths
    finally:
        shutil.rmtree(ephemeral_dir, ignore_errors=True)
