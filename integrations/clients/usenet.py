from __future__ import annotations

from typing import List, Optional

from core.models import ClientType, DownloadFile, DownloadItem
from integrations.clients.base import DownloadService


class UsenetService(DownloadService):
    """Placeholder for Usenet clients: nothing to inspect, nothing to mutate."""

    client_type = ClientType.USENET

    async def login(self) -> None:
        return None

    async def _get_item(self, download_hash: str) -> Optional[DownloadItem]:
        return None

    async def _get_files(self, item: DownloadItem) -> List[DownloadFile]:
        return []

    async def _set_unwanted(self, item: DownloadItem, files: List[DownloadFile]) -> None:
        return None

    async def _delete(self, download_hash: str) -> None:
        return None

    async def _get_seeding(self) -> List[DownloadItem]:
        return []

    async def _create_category(self, name: str) -> None:
        return None

    async def _change_category(self, item: DownloadItem, category: str) -> None:
        return None
