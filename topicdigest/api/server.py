"""Run the API with uvicorn."""

from __future__ import annotations

import uvicorn

from topicdigest.config import API_HOST, API_PORT, LOG_LEVEL


def main() -> None:
    uvicorn.run(
        "topicdigest.api.app:app",
        host=API_HOST,
        port=API_PORT,
        log_level=LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
