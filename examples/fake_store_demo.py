"""Executa a demonstração completa da livraria sobre o armazenamento local em arquivos."""

import asyncio
from functools import partial
from pathlib import Path

from bookstore import LocalStorageBackend, connect_fake, main
from bookstore.runner import configure_logging

DATA_DIR = Path("data/examples/fake_store_demo")


if __name__ == "__main__":
    configure_logging()
    backend = LocalStorageBackend(str(DATA_DIR))
    raise SystemExit(asyncio.run(main(connect=partial(connect_fake, backend))))
