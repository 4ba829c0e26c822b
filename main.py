"""
FastAPI应用主入口
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.routes import reconciliation as reconciliation_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from core.settings import get_reconciliation_settings
from domain.reconciliation.exceptions import ReconciliationError
from domain.transaction.entity import Transaction
from infrastructure.cache import shutdown_redis_client
from infrastructure.database import AsyncSessionLocal, create_tables
from infrastructure.reconciliation_factory import build_reconciliation_engine


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
logger = get_logger(__name__)


async def log_terminal_status(tx: Transaction) -> None:
    """默认状态回调：宿主应用可替换为业务处理"""
    logger.info(
        "transaction_finalized",
        reference=tx.reference,
        transaction_id=tx.transaction_id,
        status=tx.status.value,
        source=tx.status_source.value,
    )


async def log_anomaly(error: ReconciliationError) -> None:
    """默认异常回调：只记录，不自动处理"""
    logger.error(
        "reconciliation_anomaly_reported",
        reference=error.reference,
        error_type=error.error_type,
        details=error.details,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时创建数据库表（仅开发环境）。生产应使用 Alembic 迁移
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")
    else:
        logger.info(
            "database_migrations_required",
            message="No auto-create in production, use Alembic migrations (alembic upgrade head)"
        )

    cfg = get_reconciliation_settings()
    engine = await build_reconciliation_engine(
        cfg,
        session_factory=AsyncSessionLocal,
        on_status=log_terminal_status,
        on_anomaly=log_anomaly,
    )
    await engine.start()
    app.state.reconciliation = engine
    logger.info("reconciliation_engine_started", environment=cfg.environment)

    yield

    await engine.aclose()
    app.state.reconciliation = None
    if cfg.dedup.backend == "redis":
        await shutdown_redis_client()
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="支付网关对账引擎",
)

# 添加中间件（注意顺序：从下往上执行）
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册全局异常处理器
register_exception_handlers(app)

# 注册路由
app.include_router(reconciliation_routes.router, prefix=settings.API_V1_PREFIX)


@app.get("/", tags=["Root"])
async def root():
    """API根路径"""
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
        },
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    return success_response(data={"status": "healthy"})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
