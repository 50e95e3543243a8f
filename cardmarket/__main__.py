# cardmarket/__main__.py
from __future__ import annotations

import os

import uvicorn

from .main import create_app


def main() -> None:
    uvicorn.run(
        create_app(),
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
