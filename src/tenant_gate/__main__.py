"""Run the API with uvicorn: ``python -m tenant_gate``."""

import uvicorn

from tenant_gate.config import settings


def main() -> None:
    uvicorn.run(
        "tenant_gate.api.app:app",
        host="0.0.0.0",  # noqa: S104
        port=settings.port,
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
