import logging

import uvicorn

from .config import log_level

if __name__ == "__main__":
    logging.basicConfig(
        level=log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    from .main import app
    uvicorn.run(app, host="0.0.0.0", port=8000, workers=1)
