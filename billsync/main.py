# billsync/main.py
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from billsync.api.endpoints import router
from billsync.config import settings
from billsync.services.database_service import database_service
from billsync.services.mailbox import load_message_source
import logging
from contextlib import asynccontextmanager

# 配置日志
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时执行
    logging.info("应用启动中...")
    await database_service.initialize()
    app.state.message_source = load_message_source(settings.mailbox_source)

    yield

    # 关闭时执行
    logging.info("应用关闭中...")
    app.state.message_source = None
    await database_service.close()


app = FastAPI(
    title="账单同步服务",
    description="基于FastAPI+Langchain的账单持久化与邮件账单提取服务",
    version="1.0.0",
    lifespan=lifespan
)

# 添加CORS中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由
app.include_router(router, prefix="/api/v1")


@app.get("/")
async def root():
    return {
        "message": "账单同步服务运行中",
        "version": "1.0.0",
        "docs": "/docs"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "billsync.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        workers=1
    )
