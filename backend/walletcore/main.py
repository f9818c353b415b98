import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from walletcore.config import settings
from walletcore.core.exceptions import LedgerError
from walletcore.core.redis import get_redis, close_redis
from walletcore.routers import wallet, send, copy_trade, admin
from walletcore.services.copy_trade_tick import copy_trade_tick_loop

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_redis()
    tasks = []
    if settings.COPY_TRADE_ENABLED and settings.COPY_TRADE_TICK_ENABLED:
        tasks.append(asyncio.create_task(copy_trade_tick_loop()))
        logger.info("Copy-trade tick loop started (every %ss)", settings.COPY_TRADE_TICK_SECONDS)
    yield
    for task in tasks:
        task.cancel()
    await close_redis()

app = FastAPI(title="WalletCore API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

app.include_router(wallet.router)
app.include_router(send.router)
app.include_router(copy_trade.router)
app.include_router(admin.router)

@app.get("/health")
async def health():
    return {"status": "ok"}
