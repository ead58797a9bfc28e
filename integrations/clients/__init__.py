from __future__ import annotations

import logging
from typing import Dict, List, Type

from core.errors import FatalClientError
from core.models import ClientType, DownloadClientConfig

from .base import DownloadService, ServiceDeps
from .deluge import DelugeService
from .qbittorrent import QBittorrentService
from .transmission import TransmissionService
from .usenet import UsenetService

SERVICES: Dict[ClientType, Type[DownloadService]] = {
    ClientType.QBITTORRENT: QBittorrentService,
    ClientType.DELUGE: DelugeService,
    ClientType.TRANSMISSION: TransmissionService,
    ClientType.USENET: UsenetService,
}


def create_download_service(config: DownloadClientConfig, deps: ServiceDeps) -> DownloadService:
    try:
        cls = SERVICES[config.type]
    except KeyError:
        raise ValueError(f'unsupported download client type: {config.type}')
    return cls(config, deps)


def create_download_services(configs: List[DownloadClientConfig], deps: ServiceDeps) -> List[DownloadService]:
    return [create_download_service(c, deps) for c in configs]


async def login_all(services: List[DownloadService]) -> List[DownloadService]:
    """Log in every client; the ones that fail sit out the current run."""
    ready: List[DownloadService] = []
    for service in services:
        try:
            await service.login()
        except FatalClientError as e:
            logging.error(f'download client {service.name} disabled for this run: {e}')
            continue
        except Exception as e:
            logging.error(f'failed to login to download client {service.name}: {e}')
            continue
        ready.append(service)
    return ready
