"""Entry point: ``python -m onebox``."""

from __future__ import annotations

import asyncio

from .config import OneboxConfig
from .service import Onebox


def main() -> None:
    config = OneboxConfig()
    asyncio.run(Onebox(config).run())


if __name__ == "__main__":
    main()
