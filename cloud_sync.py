"""
Remote snapshot sync.

The whole dataset is pushed to (or pulled from) a public key-value blob
store as one JSON document. Anyone who knows the key can read and overwrite
it; there is no authentication and no conflict handling beyond the merge
strategies below.
"""
from datetime import datetime, timezone
import logging
import re
import secrets
import string
import threading

import requests

logger = logging.getLogger(__name__)

STATUS_IDLE = 'idle'
STATUS_SYNCING = 'syncing'
STATUS_ERROR = 'error'
STATUS_SUCCESS = 'success'

# AppSetting keys
SETTING_SYNC_KEY = 'sync_key'
SETTING_STATUS = 'sync_status'
SETTING_LAST_SYNC = 'sync_last_at'
SETTING_LAST_ERROR = 'sync_last_error'
LOCAL_SNAPSHOT_PREFIX = 'sync_snapshot:'

BACKEND_KVDB = 'kvdb'
BACKEND_JSONBLOB = 'jsonblob'
BACKEND_LOCAL = 'local'

DEFAULT_BASE_URLS = {
    BACKEND_KVDB: 'https://kvdb.io',
    BACKEND_JSONBLOB: 'https://jsonblob.com/api/jsonBlob',
}

DEFAULT_BUCKET = 'siglab_aviario_v1_sync'

MERGE_REPLACE = 'replace'
MERGE_UPDATED_AT = 'updated_at'

MIN_KEY_LENGTH = 3
KEY_ALPHABET = string.ascii_uppercase + string.digits


class SyncError(Exception):
    """Invalid sync key or an unusable backend configuration."""


def sanitize_key(key):
    """
    Trim, upper-case and replace anything outside A-Z, 0-9 and '-' with '_'.
    Raises SyncError for keys shorter than 3 characters.
    """
    cleaned = re.sub(r'[^A-Z0-9-]', '_', (key or '').strip().upper())
    if len(cleaned) < MIN_KEY_LENGTH:
        raise SyncError(f"Sync key must have at least {MIN_KEY_LENGTH} characters")
    return cleaned

def generate_sync_key(length=8):
    return ''.join(secrets.choice(KEY_ALPHABET) for _ in range(length))

def device_label(user_agent):
    if not user_agent:
        return 'Server'
    return 'Mobile' if 'Mobi' in user_agent else 'Desktop'

def utc_iso(dt=None):
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')

def build_snapshot(records, batches, device='Server', now=None):
    return {
        'records': [r.to_dict() for r in records],
        'batchRecords': [b.to_dict() for b in batches],
        'lastUpdated': utc_iso(now),
        'device': device,
    }


def _parse_ts(value):
    """ISO timestamp -> naive UTC datetime; None when missing or unreadable."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt

def _merge_by_updated_at(local_items, remote_items):
    merged = {}
    order = []
    for item in local_items:
        if item.get('id') is None:
            continue
        merged[item['id']] = item
        order.append(item['id'])

    for item in remote_items:
        item_id = item.get('id')
        if item_id is None:
            continue
        if item_id not in merged:
            merged[item_id] = item
            order.append(item_id)
            continue

        local_ts = _parse_ts(merged[item_id].get('updatedAt'))
        remote_ts = _parse_ts(item.get('updatedAt'))
        # A missing timestamp always loses
        if remote_ts is None:
            continue
        if local_ts is None or remote_ts > local_ts:
            merged[item_id] = item

    return [merged[i] for i in order]

def merge_snapshot(local, remote, strategy=MERGE_REPLACE):
    """
    Combine a local and a remote snapshot into {'records', 'batchRecords'}.

    replace     the remote lists win wholesale
    updated_at  union by id; the copy with the newer updatedAt wins
    """
    remote = remote or {}
    local = local or {}

    if strategy == MERGE_REPLACE:
        return {
            'records': list(remote.get('records') or []),
            'batchRecords': list(remote.get('batchRecords') or []),
        }
    if strategy == MERGE_UPDATED_AT:
        return {
            'records': _merge_by_updated_at(local.get('records') or [], remote.get('records') or []),
            'batchRecords': _merge_by_updated_at(local.get('batchRecords') or [], remote.get('batchRecords') or []),
        }
    raise SyncError(f"Unknown merge strategy: {strategy}")


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class SyncClient:
    name = None

    def __init__(self, base_url=None, timeout=10):
        self.base_url = (base_url or DEFAULT_BASE_URLS.get(self.name, '')).rstrip('/')
        self.timeout = timeout

    def normalize_key(self, key):
        return sanitize_key(key)

    def save(self, key, snapshot):
        raise NotImplementedError

    def fetch(self, key):
        raise NotImplementedError


class KVDBClient(SyncClient):
    """kvdb.io: one bucket per application, one value per sync key."""
    name = BACKEND_KVDB

    def __init__(self, base_url=None, timeout=10, bucket=DEFAULT_BUCKET):
        super().__init__(base_url, timeout)
        self.bucket = bucket or DEFAULT_BUCKET

    def url_for(self, key):
        return f"{self.base_url}/{self.bucket}/{self.normalize_key(key)}"

    def save(self, key, snapshot):
        url = self.url_for(key)
        try:
            resp = requests.post(url, json=snapshot, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Sync push to {url} failed: {e}")
            return False
        if not resp.ok:
            logger.error(f"Sync push to {url} rejected ({resp.status_code})")
        return resp.ok

    def fetch(self, key):
        url = self.url_for(key)
        try:
            resp = requests.get(url, timeout=self.timeout)
            if resp.status_code == 404:
                logger.info(f"Nothing stored yet under {url}")
                return None
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Sync pull from {url} failed: {e}")
            return None


class JSONBlobClient(SyncClient):
    """
    jsonblob.com: the store hands out the blob id on creation, and that id
    is used as the sync key afterwards.
    """
    name = BACKEND_JSONBLOB
    headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}

    def normalize_key(self, key):
        key = (key or '').strip()
        if len(key) < MIN_KEY_LENGTH:
            raise SyncError(f"Sync key must have at least {MIN_KEY_LENGTH} characters")
        return key

    def create(self, snapshot):
        """POST a new blob; returns its id, or '' on failure."""
        try:
            resp = requests.post(self.base_url, json=snapshot, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Creating sync blob failed: {e}")
            return ''
        location = resp.headers.get('Location')
        if not resp.ok or not location:
            logger.error(f"Creating sync blob rejected ({resp.status_code})")
            return ''
        return location.rstrip('/').split('/')[-1]

    def save(self, key, snapshot):
        url = f"{self.base_url}/{self.normalize_key(key)}"
        try:
            resp = requests.put(url, json=snapshot, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Sync push to {url} failed: {e}")
            return False
        if not resp.ok:
            logger.error(f"Sync push to {url} rejected ({resp.status_code})")
        return resp.ok

    def fetch(self, key):
        url = f"{self.base_url}/{self.normalize_key(key)}"
        try:
            resp = requests.get(url, headers=self.headers, timeout=self.timeout)
            if not resp.ok:
                logger.warning(f"Sync pull from {url} returned {resp.status_code}")
                return None
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Sync pull from {url} failed: {e}")
            return None


class LocalClient(SyncClient):
    """Keeps snapshots in the settings table; for offline installs and tests."""
    name = BACKEND_LOCAL

    def __init__(self, get_setting, set_setting):
        super().__init__(None, 0)
        self._get = get_setting
        self._set = set_setting

    def save(self, key, snapshot):
        self._set(LOCAL_SNAPSHOT_PREFIX + self.normalize_key(key), snapshot)
        return True

    def fetch(self, key):
        return self._get(LOCAL_SNAPSHOT_PREFIX + self.normalize_key(key))


def make_client(config, get_setting=None, set_setting=None):
    backend = (config.get('SYNC_BACKEND') or BACKEND_KVDB).lower()
    timeout = config.get('SYNC_TIMEOUT', 10)
    base_url = config.get('SYNC_BASE_URL')

    if backend == BACKEND_KVDB:
        return KVDBClient(base_url, timeout, config.get('SYNC_BUCKET'))
    if backend == BACKEND_JSONBLOB:
        return JSONBlobClient(base_url, timeout)
    if backend == BACKEND_LOCAL:
        if get_setting is None or set_setting is None:
            raise SyncError("Local sync backend needs a settings store")
        return LocalClient(get_setting, set_setting)
    raise SyncError(f"Unknown sync backend: {backend}")


# ---------------------------------------------------------------------------
# Debounced auto-push
# ---------------------------------------------------------------------------

class PushDebouncer:
    """
    Runs callback once, delay seconds after the last trigger().
    Each trigger cancels the push still waiting.
    """

    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self._timer = None
        self._lock = threading.Lock()

    @property
    def pending(self):
        with self._lock:
            return self._timer is not None

    def trigger(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self._run)
            self._timer.daemon = True
            self._timer.start()

    def cancel(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _run(self):
        with self._lock:
            self._timer = None
        try:
            self.callback()
        except Exception as e:
            # Background thread: nothing above us to report to
            logger.exception(f"Background sync push failed: {e}")
