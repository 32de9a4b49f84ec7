from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel

from capture_store.services.search_service import SearchConfig
from capture_store.storage.base import Storage
from capture_store.storage.file_storage import FileStorage, FileStorageConfig
from capture_store.storage.memory_storage import MemoryStorage, MemoryStorageConfig


class StorageConfig(BaseModel):
    backend: Literal["file", "memory"] = "file"
    file: FileStorageConfig = FileStorageConfig()
    memory: MemoryStorageConfig = MemoryStorageConfig()


class ListenConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8080


class LoggingConfig(BaseModel):
    level: str = "INFO"
    quiet: bool = False


class AppConfig(BaseModel):
    storage: StorageConfig = StorageConfig()
    search: SearchConfig = SearchConfig()
    listen: ListenConfig = ListenConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config() -> AppConfig:
    config_path = Path(
        os.environ.get("CAPTURE_STORE_CONFIG", "config.yaml")
    )
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        return AppConfig(**data)
    return AppConfig()


def build_storage(config: AppConfig) -> Storage:
    if config.storage.backend == "memory":
        return MemoryStorage(config.storage.memory)
    return FileStorage(config.storage.file)
