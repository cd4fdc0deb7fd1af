"""
Pytest fixtures for StoreVault tests.
"""
import itertools
import threading
import time
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from storevault.database import Base
from storevault.exceptions import BackupNotFoundException
from storevault.models import DriveCredential
from storevault.repositories.document_repository import DocumentRepository
from storevault.services.backup_store import BackupStore
from storevault.services.mirror_service import MirrorClient, ProviderAuthorizationError, TokenGrant
from storevault.services.restore_service import RestoreService
from storevault.services.scheduler_service import GlobalBackupManager


START_TIME = datetime(2026, 3, 2, 12, 0, 0)


class MutableClock:
    """Clock whose time only moves when a test moves it"""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeScheduler:
    """Stands in for BackgroundScheduler; jobs are never fired"""

    def __init__(self, registry=None):
        self.jobs = []
        self.running = False
        if registry is not None:
            registry.append(self)

    def add_job(self, func, trigger, **kwargs):
        self.jobs.append((func, trigger, kwargs))

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False


class FakeDriveTransport:
    """In-memory Google Drive with scripted authorization failures"""

    def __init__(self, clock):
        self.clock = clock
        self.files = {}
        self.valid_tokens = set()
        self.refresh_calls = 0
        self.refresh_error = None
        self.refresh_delay = 0.0
        self.unauthorized_responses = 0
        self.calls = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _check(self, access_token, operation):
        self.calls.append((operation, access_token))
        if self.unauthorized_responses > 0:
            self.unauthorized_responses -= 1
            raise ProviderAuthorizationError(operation)
        if access_token not in self.valid_tokens:
            raise ProviderAuthorizationError(operation)

    def refresh(self, refresh_token):
        with self._lock:
            self.refresh_calls += 1
            number = self.refresh_calls
        if self.refresh_delay:
            time.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        token = f"refreshed-{number}"
        self.valid_tokens.add(token)
        return TokenGrant(access_token=token, token_expiry_date=self.clock() + timedelta(hours=1))

    def ensure_folder(self, access_token, folder_name):
        self._check(access_token, "folder lookup")
        return "folder-1"

    def upload(self, access_token, folder_id, file_name, payload, mime_type="application/json"):
        self._check(access_token, "upload")
        file_id = f"file-{next(self._ids)}"
        self.files[file_id] = {"name": file_name, "payload": payload, "folder_id": folder_id}
        return file_id

    def list_files(self, access_token, folder_id, name_prefix):
        self._check(access_token, "list")
        return [
            {"id": file_id, "name": f["name"], "size": str(len(f["payload"]))}
            for file_id, f in self.files.items()
            if f["name"].startswith(name_prefix) and f["folder_id"] == folder_id
        ]

    def download(self, access_token, file_id):
        self._check(access_token, "download")
        if file_id not in self.files:
            raise BackupNotFoundException(file_id)
        return self.files[file_id]["payload"]

    def delete(self, access_token, file_id):
        self._check(access_token, "delete")
        self.files.pop(file_id, None)

    def get_download_url(self, access_token, file_id):
        self._check(access_token, "download link")
        return f"https://drive.example/{file_id}"


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so worker threads get their own connections"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'storevault-test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def backup_dir(tmp_path):
    path = tmp_path / "backups"
    path.mkdir()
    return path


@pytest.fixture
def backup_store(session_factory, backup_dir, clock):
    return BackupStore(session_factory, backup_dir=str(backup_dir), clock=clock)


@pytest.fixture
def drive(clock):
    return FakeDriveTransport(clock)


@pytest.fixture
def mirror_client(session_factory, drive, clock):
    return MirrorClient(session_factory, transport=drive, clock=clock, refresh_lock_timeout=5)


@pytest.fixture
def restore_service(backup_store, mirror_client, session_factory):
    return RestoreService(backup_store, mirror_client, session_factory)


@pytest.fixture
def schedulers():
    """Every FakeScheduler the manager fixture creates"""
    return []


@pytest.fixture
def manager(session_factory, backup_store, mirror_client, restore_service, clock, schedulers):
    manager = GlobalBackupManager(
        session_factory,
        backup_store=backup_store,
        mirror_client=mirror_client,
        restore_service=restore_service,
        clock=clock,
        interval_minutes=30,
        check_interval_seconds=60,
        scheduler_factory=lambda: FakeScheduler(schedulers),
    )
    yield manager
    manager.stop()


@pytest.fixture
def add_credential(session_factory, drive, clock):
    """Create a connected Drive credential; the access token is accepted by the fake Drive"""

    def _add(user_id, access_token=None, expires_in=timedelta(hours=1),
             refresh_token="refresh-token", connected=True):
        access_token = access_token or f"token-{user_id}"
        db = session_factory()
        try:
            db.add(DriveCredential(
                user_id=user_id,
                access_token=access_token,
                refresh_token=refresh_token,
                token_expiry_date=clock() + expires_in,
                connected=connected,
            ))
            db.commit()
        finally:
            db.close()
        drive.valid_tokens.add(access_token)
        return access_token

    return _add


@pytest.fixture
def get_credential(session_factory):
    def _get(user_id):
        db = session_factory()
        try:
            credential = db.query(DriveCredential).filter(DriveCredential.user_id == user_id).first()
            if credential:
                db.expunge(credential)
            return credential
        finally:
            db.close()

    return _get


@pytest.fixture
def seed(session_factory):
    """Insert documents into a live collection"""

    def _seed(collection, docs):
        db = session_factory()
        try:
            DocumentRepository.insert_many(db, collection, docs)
        finally:
            db.close()

    return _seed


@pytest.fixture
def live(session_factory):
    """Read a live collection, optionally one owner's documents"""

    def _live(collection, owner_id=None):
        db = session_factory()
        try:
            return DocumentRepository.find(db, collection, owner_id)
        finally:
            db.close()

    return _live


@pytest.fixture
def store_documents(seed):
    """Two owners' invoices and stores, plus one global settings document"""
    seed("invoices", [
        {"_id": "inv-a1", "user_id": "alice", "total": 120.5, "issued": START_TIME},
        {"_id": "inv-a2", "user_id": "alice", "total": 80},
        {"_id": "inv-b1", "user_id": "bob", "total": 42},
    ])
    seed("stores", [
        {"_id": "store-a", "user_id": "alice", "name": "Alice Books"},
        {"_id": "store-b", "user_id": "bob", "name": "Bob Tools"},
    ])
    seed("invoice_settings", [
        {"_id": "global-settings", "currency": "EUR"},
    ])
