"""Shared test fixtures for all test modules."""

from collections.abc import Callable, Iterable
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from accesslog_exporter.config import NamespaceConfig
from accesslog_exporter.errors import FollowerError

SIMPLE_FORMAT = '$remote_addr "$request" $status $body_bytes_sent $request_time $upstream_response_time'


def simple_line(
    request: str = "GET /index.html HTTP/1.1",
    status: str = "200",
    size: str = "512",
    request_time: str = "0.125",
    upstream_time: str = "0.100",
    remote_addr: str = "10.0.0.1",
) -> str:
    return f'{remote_addr} "{request}" {status} {size} {request_time} {upstream_time}'


class FakeFollower:
    """In-memory stand-in for tail.Follower: hands out a fixed list of lines."""

    def __init__(self, path: str, lines: Iterable[str], error: FollowerError | None = None):
        self.path = path
        self._lines = list(lines)
        self._error = error
        self.closed = False

    def next(self) -> str | None:
        if self._lines:
            return self._lines.pop(0)
        if self._error is not None:
            raise self._error
        return None

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def registry() -> CollectorRegistry:
    """Fresh registry per test so metric names never collide."""
    return CollectorRegistry()


@pytest.fixture
def namespace_config() -> Callable[..., NamespaceConfig]:
    """Factory for namespace configs using SIMPLE_FORMAT."""

    def _make(**overrides) -> NamespaceConfig:
        data = {
            "name": "nginx",
            "format": SIMPLE_FORMAT,
            "source_files": ["/var/log/nginx/access.log"],
        }
        data.update(overrides)
        return NamespaceConfig.model_validate(data)

    return _make


@pytest.fixture
def log_file(tmp_path: Path) -> Path:
    """An empty access log file."""
    path = tmp_path / "access.log"
    path.write_text("", encoding="utf-8")
    return path
