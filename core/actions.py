from __future__ import annotations

from typing import Any, Dict, List, Optional

from core.models import ArrInstance, InstanceType, QueueRecord, SearchItem


def build_search_item(instance: ArrInstance, group: List[QueueRecord]) -> Optional[SearchItem]:
    """Build the identifier used to search for a replacement after the group is removed."""
    record = group[0]
    is_pack = len(group) > 1

    if instance.type == InstanceType.SONARR:
        search_type = (instance.search_type or 'episode').lower()
        if search_type == 'series':
            if record.series_id is None:
                return None
            return SearchItem(search_type='series', series_id=record.series_id)
        if search_type == 'season' or is_pack:
            if record.series_id is None or record.season_number is None:
                return None
            return SearchItem(search_type='season', series_id=record.series_id, season_number=record.season_number)
        ids = [r.episode_id for r in group if r.episode_id is not None]
        if not ids:
            return None
        return SearchItem(search_type='episode', ids=ids)

    if instance.type == InstanceType.RADARR:
        ids = sorted({r.movie_id for r in group if r.movie_id is not None})
        return SearchItem(search_type='movie', ids=ids) if ids else None

    if instance.type == InstanceType.LIDARR:
        ids = sorted({r.album_id for r in group if r.album_id is not None})
        return SearchItem(search_type='album', ids=ids) if ids else None
    return None


def build_search_command(instance_type: InstanceType, item: SearchItem) -> Optional[Dict[str, Any]]:
    if instance_type == InstanceType.SONARR:
        if item.search_type == 'episode' and item.ids:
            return {"name": "EpisodeSearch", "episodeIds": list(item.ids)}
        if item.search_type == 'season' and item.series_id is not None:
            return {"name": "SeasonSearch", "seriesId": item.series_id, "seasonNumber": item.season_number}
        if item.search_type == 'series' and item.series_id is not None:
            return {"name": "SeriesSearch", "seriesId": item.series_id}
        return None
    if instance_type == InstanceType.RADARR:
        if item.ids:
            return {"name": "MoviesSearch", "movieIds": list(item.ids)}
        return None
    if instance_type == InstanceType.LIDARR:
        if item.ids:
            return {"name": "AlbumSearch", "albumIds": list(item.ids)}
        return None
    return None
