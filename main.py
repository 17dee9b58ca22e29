import logging

import uvicorn

from review_engine import create_app
from review_engine.config import settings

if __name__ == "__main__":
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(), host=settings.host, port=settings.port, log_level="warning")
