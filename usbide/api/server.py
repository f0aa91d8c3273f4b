from __future__ import annotations

from pathlib import Path


def run_api_server(*, root: Path, host: str, port: int) -> None:
    try:
        import uvicorn

        from usbide.api.app import create_app
    except ImportError as e:  # pragma: no cover
        raise RuntimeError("FastAPI/uvicorn are not installed. Install with: pip install -e .[api]") from e

    app = create_app(root=root)
    uvicorn.run(app, host=host, port=int(port), log_level="info")
