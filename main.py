"""Entry point for the CSV export service."""

from __future__ import annotations

from export_service import ExportSettings, create_app

settings = ExportSettings()
app = create_app(settings)


if __name__ == "__main__":  # pragma: no cover - manual execution support
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.api_port)
