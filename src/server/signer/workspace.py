"""
单次签发操作的临时工作区管理。

每次签发独占一个 sign-* 目录，用于存放设备私钥、CSR、扩展配置、
叶子证书以及临时 DER 文件；无论成功与否，目录都会在调用结束前被递归删除。
"""

from __future__ import annotations

import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from loguru import logger

from .errors import WorkspaceError

_PREFIX = "sign-"


def acquire() -> Path:
    """
    创建一个唯一命名的临时目录（仅当前用户可访问）。
    :return: 工作区目录路径。
    :raises WorkspaceError: 如果目录创建失败。
    """
    try:
        path = Path(tempfile.mkdtemp(prefix=_PREFIX))
    except OSError as e:
        raise WorkspaceError(f"创建临时工作区失败: {e}") from e
    logger.debug(f"已创建工作区: {path}")
    return path


def release(path: Path | str | None) -> None:
    """
    递归删除工作区。重复释放或目录已不存在时不报错。
    :raises WorkspaceError: 如果目录存在但无法删除。
    """
    if path is None:
        return
    path = Path(path)
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return
    except OSError as e:
        raise WorkspaceError(f"清理临时工作区失败: {path}: {e}") from e
    logger.debug(f"已清理工作区: {path}")


@contextmanager
def workspace() -> Iterator[Path]:
    """在 with 块内提供工作区，退出时（包括异常与中断）一定释放。"""
    path = acquire()
    try:
        yield path
    finally:
        release(path)


def write_secret(path: Path, data: bytes) -> Path:
    """以 0600 权限写入工作区内的敏感文件。"""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    return path
