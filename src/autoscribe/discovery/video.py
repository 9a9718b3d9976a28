from __future__ import annotations

import re
from typing import Any

from ..models import DiscoveryResult, SourceConfig, SourceType
from .base import Discoverer

YOUTUBE_API = "https://www.googleapis.com/youtube/v3"
UNAVAILABLE_TITLES = {"Private video", "Deleted video"}

_DURATION_RE = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)


def parse_duration(value: str | None) -> int | None:
    """ISO 8601 duration (``PT4M13S``) to seconds."""
    if not value:
        return None
    match = _DURATION_RE.match(value.strip())
    if not match:
        return None
    parts = {key: int(number) for key, number in match.groupdict().items() if number}
    return (
        parts.get("days", 0) * 86400
        + parts.get("hours", 0) * 3600
        + parts.get("minutes", 0) * 60
        + parts.get("seconds", 0)
    )


class VideoDiscoverer(Discoverer):
    """YouTube channel or playlist uploads via the Data API v3."""

    source_type = SourceType.VIDEO

    def _discover(self, source: SourceConfig, campaign_id: str, result: DiscoveryResult) -> None:
        options = source.options
        api = (source.url or YOUTUBE_API).rstrip("/")
        api_key = options.get("api_key")
        if not api_key:
            self.parse_error(result, api, "video source requires options.api_key")
            return
        playlist_id = options.get("playlist_id")
        if not playlist_id and options.get("channel_id"):
            playlist_id = self._uploads_playlist(api, api_key, options["channel_id"], result)
        if not playlist_id:
            if not result.errors:
                self.parse_error(result, api, "video source requires channel_id or playlist_id")
            return

        max_results = int(options.get("max_results") or 50)
        max_depth = self.max_depth(source)
        keywords = self.keyword_filter(source)
        page_token: str | None = None
        depth = 1
        while True:
            data = self.fetch_json(
                f"{api}/playlistItems",
                result,
                params={
                    "part": "snippet,contentDetails",
                    "playlistId": playlist_id,
                    "maxResults": min(max_results, 50),
                    "pageToken": page_token,
                    "key": api_key,
                },
            )
            if not isinstance(data, dict):
                return
            entries = self.convert_entries(
                result, f"{api}/playlistItems", data.get("items") or [], playlist_item_to_raw
            )
            result.found_count += len(entries)
            available = [raw for raw in entries if raw is not None]
            result.dropped_count += len(entries) - len(available)
            self._apply_details(api, api_key, available, options, result)
            for raw in available:
                if raw.get("_rejected"):
                    self.drop(result, raw.pop("_rejected"), url=raw["url"])
                    continue
                if not keywords.accepts(raw["title"], raw["excerpt"]):
                    self.drop(result, "keywords", url=raw["url"])
                    continue
                self.emit(raw, source, campaign_id, result)
            page_token = data.get("nextPageToken")
            if not page_token or result.found_count >= max_results:
                return
            depth += 1
            if depth > max_depth:
                self.depth_exceeded(result, playlist_id, depth)
                return

    def _uploads_playlist(
        self, api: str, api_key: str, channel_id: str, result: DiscoveryResult
    ) -> str | None:
        data = self.fetch_json(
            f"{api}/channels",
            result,
            params={"part": "contentDetails", "id": channel_id, "key": api_key},
        )
        if not isinstance(data, dict):
            return None
        try:
            return data["items"][0]["contentDetails"]["relatedPlaylists"]["uploads"]
        except (KeyError, IndexError, TypeError):
            self.parse_error(result, api, f"channel not found: {channel_id}")
            return None

    def _apply_details(
        self,
        api: str,
        api_key: str,
        entries: list[dict[str, Any]],
        options: dict[str, Any],
        result: DiscoveryResult,
    ) -> None:
        if not entries:
            return
        min_duration = options.get("min_duration_seconds")
        max_duration = options.get("max_duration_seconds")
        require_captions = bool(options.get("require_captions"))
        filtering = min_duration is not None or max_duration is not None or require_captions
        data = self.fetch_json(
            f"{api}/videos",
            result,
            params={
                "part": "contentDetails",
                "id": ",".join(raw["item_id"] for raw in entries),
                "key": api_key,
            },
        )
        details: dict[str, dict[str, Any]] = {}
        if isinstance(data, dict):
            for video in data.get("items") or []:
                if isinstance(video, dict) and video.get("id"):
                    details[video["id"]] = video.get("contentDetails") or {}
        for raw in entries:
            info = details.get(raw["item_id"])
            if info is None:
                if filtering:
                    raw["_rejected"] = "details_unavailable"
                continue
            duration = parse_duration(info.get("duration"))
            captions = str(info.get("caption") or "").lower() == "true"
            raw["raw_metadata"]["duration_seconds"] = duration
            raw["raw_metadata"]["captions"] = captions
            if min_duration is not None and (duration is None or duration < int(min_duration)):
                raw["_rejected"] = "min_duration"
            elif max_duration is not None and (duration is None or duration > int(max_duration)):
                raw["_rejected"] = "max_duration"
            elif require_captions and not captions:
                raw["_rejected"] = "captions"


def playlist_item_to_raw(item: dict[str, Any]) -> dict[str, Any] | None:
    snippet = item.get("snippet") or {}
    details = item.get("contentDetails") or {}
    title = snippet.get("title") or ""
    video_id = details.get("videoId") or (snippet.get("resourceId") or {}).get("videoId")
    if not title or title in UNAVAILABLE_TITLES or not video_id:
        return None
    thumbnail = best_thumbnail(snippet.get("thumbnails") or {})
    return {
        "item_id": video_id,
        "title": title,
        "url": f"https://www.youtube.com/watch?v={video_id}",
        "excerpt": snippet.get("description") or "",
        "published_at": details.get("videoPublishedAt") or snippet.get("publishedAt"),
        "author": snippet.get("videoOwnerChannelTitle") or snippet.get("channelTitle"),
        "media_urls": [thumbnail] if thumbnail else [],
        "raw_metadata": {
            "video_id": video_id,
            "channel_id": snippet.get("channelId"),
            "channel_title": snippet.get("channelTitle"),
        },
    }


def best_thumbnail(thumbnails: dict[str, Any]) -> str | None:
    for quality in ("high", "medium", "default"):
        url = (thumbnails.get(quality) or {}).get("url")
        if url:
            return url
    return None
