"""Entry point for running the bookmarks API."""
import logging
import os

import uvicorn


def main() -> None:
    """Run the API with uvicorn."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    host = os.getenv("API_HOST", "0.0.0.0")
    # API_PORT for local dev, PORT for PaaS platforms
    port = int(os.getenv("API_PORT") or os.getenv("PORT") or "8000")

    uvicorn.run(
        "api.main:app",
        host=host,
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
