"""Главный файл приложения."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from esim_app.config import settings
from esim_app.api.v1 import router as api_v1_router
from esim_app.core.cache import cache_service
from esim_app.database import AsyncSessionLocal
from esim_app.services.rate_service import RateService

# Настройка логирования
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Глобальный планировщик задач
scheduler = AsyncIOScheduler()


async def refresh_exchange_rate():
    """Периодическая задача: обновить курс USD -> MNT, если сохраненный устарел."""
    try:
        async with AsyncSessionLocal() as db:
            quote = await RateService(db).get_quote()
            logger.info(f"Курс {settings.base_currency}->{settings.local_currency}: {quote.rate} ({quote.source})")
    except Exception as e:
        logger.error(f"Ошибка при обновлении курса валют: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Управление жизненным циклом приложения."""
    # Startup
    await cache_service.connect()

    # Задача будет выполняться каждый день в 1:00 UTC
    scheduler.add_job(
        refresh_exchange_rate,
        trigger=CronTrigger(hour=1, minute=0),
        id="refresh_exchange_rate",
        name="Обновление курса валют",
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Планировщик задач запущен. Обновление курса запланировано на 1:00 UTC ежедневно")

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    await cache_service.disconnect()


app = FastAPI(
    title="eSIM Store API",
    description="Backend API магазина eSIM: заказ, оплата через QPay, выпуск eSIM через RoamWiFi",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS - в development режиме разрешаем все origins
if settings.is_development:
    cors_origins = ["*"]
    # Нельзя использовать allow_credentials=True с allow_origins=["*"]
    allow_creds = False
else:
    cors_origins = list(set(settings.cors_origins))
    allow_creds = True

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=allow_creds,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Подключаем роутеры
app.include_router(api_v1_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Корневой endpoint."""
    return {
        "message": "eSIM Store API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok"}
