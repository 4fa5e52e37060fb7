import logging

from fastapi import FastAPI

from .admin import router as admin_router
from .config import get_settings
from .db import Base, engine
from .tickets import router as tickets_router

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Ticket Gate", version="1.0.0")

app.include_router(tickets_router)
app.include_router(admin_router)

# Create DB tables (schema migrations are not part of this service)
Base.metadata.create_all(bind=engine)


@app.get("/")
def health():
    return {"status": "ok", "service": "ticketgate"}
