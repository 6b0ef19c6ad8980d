import pytest
from loguru import logger

import naming
from config import default_config
from store import FileRecord, MetadataStore

T0 = 1_700_000_000.0

API_KEY        = "test-api-key"
ADMIN_USER     = "admin"
ADMIN_PASSWORD = "admin-pw"
LIST_PASSWORD  = "list-pw"


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def seed_config(storage_root) -> dict:
    return dict(default_config(storage_root.parent), **{
        "storage.images_dir":  str(storage_root),
        "auth.api_key":        API_KEY,
        "auth.admin_username": ADMIN_USER,
        "auth.admin_password": ADMIN_PASSWORD,
        "auth.list_password":  LIST_PASSWORD,
    })


def make_record(name="photo.jpg", size=10, ttl=1, now=T0, address="127.0.0.1") -> FileRecord:
    return FileRecord.create(naming.generate_path(name, now), name, size, ttl,
                             source_address=address, now=now)


def write_stored(storage_root, record: FileRecord, content: bytes = None):
    path = storage_root / record.relative_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content if content is not None else b"x" * record.size_bytes)
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage_root(tmp_path):
    root = tmp_path / "files"
    root.mkdir()
    return root


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "meta" / "metadata.json"


@pytest.fixture
def store(db_path, storage_root, clock):
    s = MetadataStore.open(db_path, defaults=seed_config(storage_root),
                           clock=clock, flush_interval=None)
    yield s
    s.close()


@pytest.fixture
def logs():
    messages = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)
