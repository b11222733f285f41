from signal_scanner.api.server import create_app
from signal_scanner.core.config import configure_logging, get_env

configure_logging(get_env("SCANNER_LOG_LEVEL", "INFO"))

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("signal_scanner.app:app", host="0.0.0.0", port=8000, reload=True)
