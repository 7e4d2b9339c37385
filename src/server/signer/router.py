"""
设备证书签发服务的 FastAPI 路由定义。
"""

import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from loguru import logger
from starlette.concurrency import run_in_threadpool

from src.server.config import Config, config

from . import services
from .errors import SignerError
from .limiter import limiter
from .schemas import HealthResponse, IntermediateCA, SignRequest, SignResponse


def get_settings() -> Config:
    return config


def rate_limit(request: Request, settings: Config = Depends(get_settings)) -> None:
    client = request.client.host if request.client else "unknown"
    retry_after = limiter.hit(client, settings.rate_limit_per_minute)
    if retry_after:
        raise HTTPException(
            status_code=429,
            detail="rate_limited",
            headers={"Retry-After": str(int(retry_after) + 1)},
        )


def require_token(
    authorization: str | None = Header(default=None),
    settings: Config = Depends(get_settings),
) -> None:
    expected = settings.signer_token.get_secret_value()
    token = ""
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):]
    # 未配置令牌时拒绝所有请求
    if not expected or not secrets.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="unauthorized")


def get_intermediate_ca(request: Request) -> IntermediateCA:
    ca = getattr(request.app.state, "intermediate_ca", None)
    if ca is None:
        raise HTTPException(status_code=503, detail="signer_not_ready")
    return ca


router = APIRouter(prefix="/v1", tags=["Device Signer"], dependencies=[Depends(rate_limit)])


@router.post("/sign", response_model=SignResponse, dependencies=[Depends(require_token)])
async def sign(
    req: SignRequest,
    ca: IntermediateCA = Depends(get_intermediate_ca),
    settings: Config = Depends(get_settings),
) -> SignResponse:
    """
    为设备生成私钥并签发由中间 CA 签名的证书链。
    """
    try:
        # 签发为阻塞操作，放入线程池避免阻塞事件循环
        return await run_in_threadpool(
            services.sign_device_certificate_service, req, ca, settings
        )
    except SignerError as e:
        logger.error(f"证书签发失败: device_id={req.device_id}: {e}")
        raise HTTPException(status_code=500, detail="sign_failed")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception(f"证书签发时发生未预期错误: {e}")
        raise HTTPException(status_code=500, detail="sign_failed")


@router.get("/healthz", response_model=HealthResponse, response_model_exclude_none=True)
async def healthz() -> HealthResponse:
    return HealthResponse(ok=True)
