from __future__ import annotations

import os

import uvicorn

from chatgate.apps.api.main import app


def main() -> None:
    # Bind address and port follow the usual PORT convention of container platforms.
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    main()
