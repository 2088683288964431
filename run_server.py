import uvicorn

from mailflow.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "mailflow.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
