from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse


class DeleteReason(str, Enum):
    NONE = 'None'
    ALL_FILES_SKIPPED = 'AllFilesSkipped'
    ALL_FILES_BLOCKED = 'AllFilesBlocked'
    STALLED = 'Stalled'
    SLOW = 'Slow'
    DOWNLOADING_METADATA = 'DownloadingMetadata'
    FAILED_IMPORT = 'FailedImport'


class CleanReason(str, Enum):
    NONE = 'None'
    MAX_RATIO_REACHED = 'MaxRatioReached'
    MAX_SEED_TIME_REACHED = 'MaxSeedTimeReached'


class StrikeType(str, Enum):
    STALLED = 'Stalled'
    SLOW = 'Slow'
    FAILED_IMPORT = 'FailedImport'
    DOWNLOADING_METADATA = 'DownloadingMetadata'


class BlocklistType(str, Enum):
    BLACKLIST = 'blacklist'
    WHITELIST = 'whitelist'


class InstanceType(str, Enum):
    SONARR = 'Sonarr'
    RADARR = 'Radarr'
    LIDARR = 'Lidarr'


class ClientType(str, Enum):
    QBITTORRENT = 'qbittorrent'
    DELUGE = 'deluge'
    TRANSMISSION = 'transmission'
    USENET = 'usenet'


class DownloadState(str, Enum):
    DOWNLOADING = 'downloading'
    STALLED = 'stalled'
    METADATA = 'metadata'
    SEEDING = 'seeding'
    PAUSED = 'paused'
    QUEUED = 'queued'
    CHECKING = 'checking'
    ERROR = 'error'
    UNKNOWN = 'unknown'


@dataclass
class DownloadFile:
    index: int
    name: str
    priority: int
    size: int = 0
    # client-relative path, joined with the item save path for disk lookups
    path: str = ''


@dataclass
class DownloadItem:
    hash: str
    name: str
    state: DownloadState = DownloadState.UNKNOWN
    is_private: bool = False
    size: int = 0
    download_speed: int = 0
    eta: int = 0
    downloaded: int = 0
    ratio: float = 0.0
    seeding_time: int = 0
    category: Optional[str] = None
    save_path: str = ''
    tags: List[str] = field(default_factory=list)
    trackers: List[str] = field(default_factory=list)
    files: List[DownloadFile] = field(default_factory=list)
    client_id: Optional[str] = None
    # backend identifier when it differs from the hash (Transmission numeric id)
    client_ref: Any = None

    def should_ignore(self, ignored: List[str]) -> bool:
        for value in ignored or []:
            v = str(value).strip().lower()
            if not v:
                continue
            if self.hash.lower() == v:
                return True
            if self.category and self.category.lower() == v:
                return True
            if any(t.lower() == v for t in self.tags):
                return True
            for tracker in self.trackers:
                host = (urlparse(tracker).hostname or '').lower()
                if host and (host == v or host.endswith('.' + v)):
                    return True
        return False


@dataclass
class DownloadCheckResult:
    found: bool = False
    is_private: bool = False
    should_remove: bool = False
    reason: DeleteReason = DeleteReason.NONE


@dataclass
class CleanCategory:
    name: str
    max_ratio: float = -1
    min_seed_time: float = 0
    max_seed_time: float = -1

    @classmethod
    def from_config(cls, data: Dict[str, Any]) -> 'CleanCategory':
        return cls(
            name=str(data.get('name') or ''),
            max_ratio=float(data.get('max_ratio', -1)),
            min_seed_time=float(data.get('min_seed_time', 0)),
            max_seed_time=float(data.get('max_seed_time', -1)),
        )


@dataclass
class ArrInstance:
    name: str
    type: InstanceType
    url: str
    api_key: str
    search_type: str = 'episode'

    @property
    def api_url(self) -> str:
        version = 'v1' if self.type == InstanceType.LIDARR else 'v3'
        return f"{self.url.rstrip('/')}/api/{version}"


@dataclass
class DownloadClientConfig:
    id: str
    type: ClientType
    host: str = ''
    name: str = ''
    enabled: bool = True
    username: Optional[str] = None
    password: Optional[str] = None
    url_base: str = ''

    @property
    def base_url(self) -> str:
        url = self.host.rstrip('/')
        if self.url_base:
            url = f"{url}/{self.url_base.strip('/')}"
        return url

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass
class QueueRecord:
    id: int
    download_id: str
    title: str
    protocol: str = ''
    status: str = ''
    tracked_download_status: str = ''
    tracked_download_state: str = ''
    status_messages: List[Dict[str, Any]] = field(default_factory=list)
    series_id: Optional[int] = None
    season_number: Optional[int] = None
    episode_id: Optional[int] = None
    movie_id: Optional[int] = None
    album_id: Optional[int] = None
    artist_id: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'QueueRecord':
        return cls(
            id=data.get('id'),
            download_id=str(data.get('downloadId') or ''),
            title=str(data.get('title') or ''),
            protocol=str(data.get('protocol') or ''),
            status=str(data.get('status') or ''),
            tracked_download_status=str(data.get('trackedDownloadStatus') or ''),
            tracked_download_state=str(data.get('trackedDownloadState') or ''),
            status_messages=data.get('statusMessages') if isinstance(data.get('statusMessages'), list) else [],
            series_id=data.get('seriesId'),
            season_number=data.get('seasonNumber'),
            episode_id=data.get('episodeId'),
            movie_id=data.get('movieId'),
            album_id=data.get('albumId'),
            artist_id=data.get('artistId'),
        )


@dataclass
class SearchItem:
    search_type: str
    ids: List[int] = field(default_factory=list)
    series_id: Optional[int] = None
    season_number: Optional[int] = None


@dataclass
class RemoveRequest:
    instance: ArrInstance
    record: QueueRecord
    search_item: Optional[SearchItem]
    is_pack: bool
    remove_from_client: bool
    reason: DeleteReason
