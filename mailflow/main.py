import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from mailflow.api.routes import router
from mailflow.config import settings
from mailflow.core.advancer import Advancer
from mailflow.db.database import SessionLocal, init_db
from mailflow.delivery.sendgrid import SendGridDelivery

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)

advancer = Advancer(SessionLocal, SendGridDelivery(settings), settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    task = None
    if settings.poller_enabled:
        task = asyncio.create_task(advancer.start())
    yield
    if task:
        task.cancel()


app = FastAPI(title="Mailflow", lifespan=lifespan)
app.state.advancer = advancer
app.include_router(router)
