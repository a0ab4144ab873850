"""Runs the API with uvicorn: `python -m certverify`."""

import uvicorn

from certverify.config import settings


def main() -> None:
    uvicorn.run(
        "certverify.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        log_level=settings.log_level.lower(),
        proxy_headers=settings.trust_forwarded_for,
    )


if __name__ == "__main__":
    main()
