"""
签发服务的异常定义。

规范化阶段的错误继承 ValueError，签发与工作区错误继承 RuntimeError，
与服务其余部分按 ValueError / RuntimeError 区分错误来源的习惯保持一致。
"""


class SignerError(Exception):
    """签发流程中所有已知错误的基类。"""


class NormalizationError(SignerError, ValueError):
    """CA 证书或私钥输入无法被规范化为 PEM。"""


class FormatError(NormalizationError):
    """输入既不是 PEM，也不是可识别的 Base64/DER。"""


class PathReadError(NormalizationError):
    """输入被识别为文件路径，但文件无法读取。"""


class ConversionError(NormalizationError):
    """DER 转换为 PEM 失败（所有候选算法均失败）。"""


class ValidationError(NormalizationError):
    """规范化后的 PEM 未通过结构校验。"""


class SigningError(SignerError, RuntimeError):
    """生成密钥、构造 CSR 或 CA 签名失败。"""


class WorkspaceError(SignerError, RuntimeError):
    """临时工作区创建或清理失败。"""
