import pytest

from repos.change_feed_repo import ChangeFeed
from repos.file_storage_manager_repo import FileStorageManager
from service.code_registry_service import CodeRegistry
from service.media_engine_service import MediaEngine
from service.session_service import SessionService


class FakeEngine(MediaEngine):
    def __init__(self, fail: bool = False):
        self.commands = []
        self.fail = fail

    async def _record(self, *command):
        if self.fail:
            raise ConnectionError("engine gone")
        self.commands.append(command)

    async def set_audio_muted(self, muted: bool):
        await self._record("audio", muted)

    async def set_video_muted(self, muted: bool):
        await self._record("video", muted)

    async def hangup(self):
        await self._record("hangup")


def sequence_generator(codes):
    """Generator stand-in that hands out the given codes in order"""
    remaining = iter(codes)
    return lambda length: next(remaining)


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def storage(tmp_path, feed):
    return FileStorageManager(str(tmp_path / "data"), feed)


@pytest.fixture
async def registry(storage):
    registry = CodeRegistry(storage)
    await registry.start()
    return registry


@pytest.fixture
async def sessions(registry, storage, feed):
    service = SessionService(registry, storage, feed)
    yield service
    await service.close()


@pytest.fixture
def engine():
    return FakeEngine()
