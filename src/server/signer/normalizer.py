"""
中间 CA 证书 / 私钥输入的规范化。

密钥管理平台或环境变量中的证书材料格式并不统一，兼容以下几种输入形式：
1) 原始 PEM 文本（换行可能丢失或被转义成字面量 \\n）
2) 被引号包裹、带 BOM 的 PEM 文本
3) Base64 / Base64URL 编码的 PEM 文本
4) Base64 / Base64URL 编码的 DER 二进制
5) 指向证书/私钥文件的路径

最终统一输出为标准 PEM：头尾行独立、正文按 64 字符换行、以单个换行结尾。
"""

from __future__ import annotations

import base64
import binascii
import re
from pathlib import Path
from typing import List

from loguru import logger

from .errors import ConversionError, FormatError, PathReadError
from .operations import CAOperations
from .schemas import SecretKind

PEM_LINE_WIDTH = 64
PEM_MARKER = "-----BEGIN "

_BOM = "\ufeff"
_PATH_PREFIX_RE = re.compile(r"^(/|\./|\.\./|[A-Za-z]:\\)")
_PATH_SUFFIX_RE = re.compile(r"\.(crt|pem|cer|der|key|p12|pfx|p7b|p7c)$", re.IGNORECASE)
_PEM_BLOCK_RE = re.compile(
    r"-----BEGIN ([^-]+)-----(.*?)-----END ([^-]+)-----", re.DOTALL
)
_WHITESPACE_RE = re.compile(r"\s+")


def unescape(raw: str) -> str:
    """去除 BOM 与首尾空白，还原转义换行，并去掉一层包裹引号。"""
    text = raw.strip().lstrip(_BOM).strip()
    text = text.replace("\\r\\n", "\n").replace("\\n", "\n").replace("\\r", "")
    text = re.sub(r"^[\"']|[\"']$", "", text)
    return text.strip()


def looks_like_path(text: str) -> bool:
    """
    判断输入是否像一个证书/私钥文件路径。
    这是启发式判断：恰好以这些扩展名结尾的 Base64 内容会被误判。
    """
    if PEM_MARKER.strip() in text or "://" in text:
        return False
    return bool(_PATH_PREFIX_RE.match(text)) and bool(_PATH_SUFFIX_RE.search(text))


def looks_like_der(data: bytes) -> bool:
    """ASN.1 SEQUENCE（0x30）且长度字段为长格式（高位为 1）。"""
    return len(data) >= 2 and data[0] == 0x30 and (data[1] & 0x80) == 0x80


def repair_pem(text: str) -> bytes:
    """
    修复 PEM 排版：头尾行独立成行，正文去掉所有空白后按 64 字符重新换行。
    多个 PEM 块按原顺序保留，块外的说明文字丢弃。
    :raises FormatError: 存在 BEGIN 标记但找不到完整的 PEM 块。
    """
    blocks: List[str] = []
    for match in _PEM_BLOCK_RE.finditer(text):
        begin_label, body, end_label = match.group(1), match.group(2), match.group(3)
        if begin_label.strip() != end_label.strip():
            raise FormatError(f"PEM 头尾标签不一致: {begin_label} / {end_label}")
        body = _WHITESPACE_RE.sub("", body)
        lines = [f"-----BEGIN {begin_label}-----"]
        lines.extend(
            body[i:i + PEM_LINE_WIDTH] for i in range(0, len(body), PEM_LINE_WIDTH)
        )
        lines.append(f"-----END {end_label}-----")
        blocks.append("\n".join(lines))
    if not blocks:
        raise FormatError("PEM 结构不完整：缺少 END 标记")
    return ("\n".join(blocks) + "\n").encode("ascii", errors="strict")


def decode_base64_lenient(text: str) -> bytes:
    """
    解码标准或 URL 安全字母表的 Base64，缺失的填充会自动补齐。
    :raises FormatError: 内容不是合法的 Base64。
    """
    content = _WHITESPACE_RE.sub("", text).replace("-", "+").replace("_", "/")
    if not content:
        raise FormatError("内容为空")
    content += "=" * (-len(content) % 4)
    try:
        return base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError) as e:
        raise FormatError(f"内容不是合法的 Base64 或 PEM: {e}") from e


def _read_path(path: str, kind: SecretKind) -> bytes:
    logger.info(f"从文件读取 {kind}: {path}")
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise PathReadError(f"无法读取 {kind} 文件 '{path}': {e}") from e


def _from_pem_text(text: str) -> bytes:
    try:
        return repair_pem(text)
    except UnicodeEncodeError as e:
        raise FormatError(f"PEM 中包含非 ASCII 字符: {e}") from e


def _from_binary(decoded: bytes, kind: SecretKind, ops: CAOperations) -> bytes:
    decoded_text = decoded.decode("utf-8", errors="replace")
    if PEM_MARKER in decoded_text:
        return _from_pem_text(decoded_text)
    if looks_like_der(decoded):
        try:
            return ops.convert_der_to_pem(decoded, kind)
        except ConversionError:
            raise
        except Exception as e:
            raise ConversionError(f"DER 转换 PEM 失败: {e}") from e
    raise FormatError(f"无效的 {kind} 格式：不是 PEM，也不是合法的 DER")


def normalize(raw: str, kind: SecretKind, ops: CAOperations) -> bytes:
    """
    将任意编码的证书/私钥输入规范化为 PEM 字节。
    :param raw: 原始输入字符串。
    :param kind: "cert" 或 "key"。
    :param ops: 用于 DER 转换与结构校验的 CA 操作后端。
    :return: 规范化后的 PEM。
    :raises FormatError / PathReadError / ConversionError / ValidationError
    """
    candidate = unescape(raw or "")
    if not candidate:
        raise FormatError(f"{kind} 内容为空")

    if looks_like_path(candidate):
        content = _read_path(candidate, kind)
        if looks_like_der(content):
            pem = _from_binary(content, kind, ops)
            ops.validate(pem, kind)
            return pem
        try:
            candidate = content.decode("utf-8").strip()
        except UnicodeDecodeError as e:
            raise FormatError(f"{kind} 文件既不是文本也不是 DER: {e}") from e

    if PEM_MARKER in candidate:
        pem = _from_pem_text(candidate)
    else:
        pem = _from_binary(decode_base64_lenient(candidate), kind, ops)

    ops.validate(pem, kind)
    return pem
