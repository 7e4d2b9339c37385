"""
FastAPI 应用入口点。
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from src.server.config import config
from src.server.signer.core import load_intermediate_ca
from src.server.signer.errors import SignerError
from src.server.signer.router import router as signer_router
from src.server.signer.schemas import HealthResponse

SERVICE_NAME = "laniot-signer"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 中间 CA 在启动时加载一次，之后只读；加载失败则拒绝启动
    cert_raw = config.dev_int_crt
    key_raw = config.dev_int_key.get_secret_value()
    if not cert_raw or not key_raw:
        logger.error("缺少 DEV_INT_CRT 或 DEV_INT_KEY 配置，服务无法启动")
        raise RuntimeError("Missing DEV_INT_CRT or DEV_INT_KEY")
    try:
        app.state.intermediate_ca = load_intermediate_ca(cert_raw, key_raw, config.ca_backend)
    except SignerError as e:
        logger.error(f"中间 CA 加载失败，服务无法启动: {e}")
        raise
    logger.info(f"{SERVICE_NAME} 已就绪，CA 后端: {config.ca_backend}")
    try:
        yield
    finally:
        app.state.intermediate_ca = None
        logger.info("应用关闭，已释放中间 CA")


app = FastAPI(title="LAN IoT Device Certificate Signer", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Origin", "X-Requested-With", "Content-Type", "Accept", "Authorization"],
)

app.include_router(signer_router)

logger.info(f"config: {config.model_dump_json(indent=4)}")


@app.get("/", response_model=HealthResponse)
async def index() -> HealthResponse:
    return HealthResponse(ok=True, service=SERVICE_NAME)


@app.get("/healthz", response_model=HealthResponse, response_model_exclude_none=True)
async def healthz() -> HealthResponse:
    return HealthResponse(ok=True)
