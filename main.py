# Simple local runner. A platform can also start the app directly with:
#   uvicorn mp3convert.main:app --host 0.0.0.0 --port $PORT
from mp3convert.config import LOG_LEVEL, PORT, PROXY_HEADERS
from mp3convert.logging_utils import configure_logging
from mp3convert.main import app

if __name__ == "__main__":
    import uvicorn

    configure_logging(LOG_LEVEL)
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=PORT,
        proxy_headers=PROXY_HEADERS,
        forwarded_allow_ips="*" if PROXY_HEADERS else None,
        log_config=None,
    )
