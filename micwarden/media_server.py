"""Minimal client for the MediaMTX v3 control API."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from . import config
from .errors import MediaServerError

log = logging.getLogger("micwarden.media_server")


@dataclass(frozen=True)
class PathInfo:
    name: str
    ready: bool = False
    bytes_received: int = 0
    readers: int = 0

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "PathInfo":
        readers = payload.get("readers")
        try:
            received = int(payload.get("bytesReceived") or 0)
        except (TypeError, ValueError):
            received = 0
        return cls(
            name=str(payload.get("name", "")),
            ready=bool(payload.get("ready")),
            bytes_received=received,
            readers=len(readers) if isinstance(readers, list) else 0,
        )


class MediaServerClient:
    def __init__(
        self,
        host: str = "localhost",
        api_port: int = 9997,
        rtsp_port: int = 8554,
        timeout: float = 3.0,
    ) -> None:
        self.host = host
        self.api_port = int(api_port)
        self.rtsp_port = int(rtsp_port)
        self.timeout = float(timeout)

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any] | None = None) -> "MediaServerClient":
        cfg = cfg if cfg is not None else config.get_cfg()
        media = cfg.get("media_server", {})
        return cls(
            host=str(media.get("host", "localhost")),
            api_port=int(media.get("api_port", 9997)),
            rtsp_port=int(media.get("rtsp_port", 8554)),
            timeout=float(media.get("api_timeout_sec", 3.0)),
        )

    @property
    def api_base(self) -> str:
        return f"http://{self.host}:{self.api_port}/v3"

    def publish_url(self, name: str) -> str:
        return f"rtsp://{self.host}:{self.rtsp_port}/{name}"

    def _request(self, method: str, path: str, body: Mapping[str, Any] | None = None) -> Dict[str, Any]:
        data = json.dumps(body).encode("utf-8") if body is not None else None
        request = Request(
            f"{self.api_base}{path}",
            data=data,
            method=method,
            headers={"Content-Type": "application/json"} if data is not None else {},
        )
        try:
            with urlopen(request, timeout=self.timeout) as response:
                raw = response.read()
        except HTTPError as exc:
            raise MediaServerError(f"{method} {path} returned {exc.code}", status=exc.code) from exc
        except (URLError, OSError) as exc:
            raise MediaServerError(f"{method} {path} failed: {exc}") from exc
        if not raw:
            return {}
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise MediaServerError(f"{method} {path} returned invalid JSON") from exc
        return payload if isinstance(payload, dict) else {}

    def list_paths(self) -> Dict[str, PathInfo]:
        payload = self._request("GET", "/paths/list")
        items = payload.get("items") or []
        paths: Dict[str, PathInfo] = {}
        for item in items:
            if isinstance(item, Mapping) and item.get("name"):
                info = PathInfo.from_api(item)
                paths[info.name] = info
        return paths

    def get_path(self, name: str) -> PathInfo | None:
        try:
            payload = self._request("GET", f"/paths/get/{quote(name, safe='')}")
        except MediaServerError as exc:
            if exc.status == 404:
                return None
            raise
        return PathInfo.from_api({"name": name, **payload})

    def is_ready(self, name: str) -> bool:
        info = self.get_path(name)
        return bool(info and info.ready)

    def add_path(self, name: str, conf: Mapping[str, Any] | None = None) -> bool:
        """Register a publisher path; returns False when it already exists."""
        try:
            self._request("POST", f"/config/paths/add/{quote(name, safe='')}", dict(conf or {"source": "publisher"}))
        except MediaServerError as exc:
            if exc.status == 400:
                log.debug("Path %s already configured on media server", name)
                return False
            raise
        log.info("Registered path %s on media server", name)
        return True


__all__ = ["MediaServerClient", "PathInfo"]
