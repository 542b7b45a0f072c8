import os

os.environ.setdefault("ATTENDANCE_LOG_TO_FILE", "0")
os.environ.setdefault("ATTENDANCE_LOG_LEVEL", "WARNING")

import pytest
from cryptography.fernet import Fernet

from attendance_core.database import EmbeddingCipher, SqlAlchemyStore, create_store_engine
from attendance_core.embedding_cache import EmbeddingCache
from attendance_core.tenant import Tenant


@pytest.fixture
def store():
    return SqlAlchemyStore(create_store_engine("sqlite://"), EmbeddingCipher(Fernet.generate_key()))


@pytest.fixture
def cache(store):
    return EmbeddingCache(store)


@pytest.fixture
def acme():
    return Tenant("acme")


@pytest.fixture
def legacy():
    return Tenant.legacy()
