import threading
import unittest
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest import mock

import requests

import cloud_sync
from cloud_sync import (
    sanitize_key, generate_sync_key, device_label, utc_iso, build_snapshot, merge_snapshot,
    make_client, KVDBClient, JSONBlobClient, LocalClient, PushDebouncer, SyncError,
    MERGE_REPLACE, MERGE_UPDATED_AT, DEFAULT_BUCKET,
)


def fake_response(status=200, payload=None, headers=None):
    resp = mock.Mock()
    resp.status_code = status
    resp.ok = status < 400
    resp.headers = headers or {}
    resp.json.return_value = payload
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return resp


class SyncKeyTestCase(unittest.TestCase):
    def test_sanitize(self):
        self.assertEqual(sanitize_key('  farm a-1 '), 'FARM_A-1')
        self.assertEqual(sanitize_key('ovos!'), 'OVOS_')
        with self.assertRaises(SyncError):
            sanitize_key(' ab ')
        with self.assertRaises(SyncError):
            sanitize_key(None)

    def test_generate(self):
        key = generate_sync_key()
        self.assertEqual(len(key), 8)
        self.assertEqual(sanitize_key(key), key)
        self.assertEqual(len(generate_sync_key(12)), 12)

    def test_device_label(self):
        self.assertEqual(device_label('Mozilla/5.0 (iPhone) Mobile/15E148'), 'Mobile')
        self.assertEqual(device_label('Mozilla/5.0 (X11; Linux x86_64)'), 'Desktop')
        self.assertEqual(device_label(None), 'Server')

    def test_utc_iso(self):
        self.assertEqual(utc_iso(datetime(2024, 1, 2, 3, 4, 5)), '2024-01-02T03:04:05Z')
        self.assertEqual(utc_iso(datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)), '2024-01-02T03:04:05Z')

    def test_build_snapshot(self):
        rec = SimpleNamespace(to_dict=lambda: {'id': 'r1'})
        batch = SimpleNamespace(to_dict=lambda: {'id': 'b1'})
        snap = build_snapshot([rec], [batch], 'Desktop', datetime(2024, 5, 1))
        self.assertEqual(snap, {
            'records': [{'id': 'r1'}],
            'batchRecords': [{'id': 'b1'}],
            'lastUpdated': '2024-05-01T00:00:00Z',
            'device': 'Desktop',
        })


class MergeSnapshotTestCase(unittest.TestCase):
    def setUp(self):
        self.local = {
            'records': [
                {'id': 'a', 'updatedAt': '2024-01-02T00:00:00Z', 'v': 'local'},
                {'id': 'b', 'updatedAt': '2024-01-05T00:00:00Z', 'v': 'local'},
                {'id': 'c', 'v': 'local'},
            ],
            'batchRecords': [{'id': 'x', 'updatedAt': '2024-01-01T00:00:00Z', 'v': 'local'}],
        }
        self.remote = {
            'records': [
                {'id': 'a', 'updatedAt': '2024-01-03T00:00:00Z', 'v': 'remote'},
                {'id': 'b', 'updatedAt': '2024-01-04T00:00:00Z', 'v': 'remote'},
                {'id': 'c', 'updatedAt': '2024-01-01T00:00:00Z', 'v': 'remote'},
                {'id': 'd', 'v': 'remote'},
            ],
            'batchRecords': [{'id': 'x', 'v': 'remote'}],
        }

    def test_replace(self):
        merged = merge_snapshot(self.local, self.remote, MERGE_REPLACE)
        self.assertEqual([r['id'] for r in merged['records']], ['a', 'b', 'c', 'd'])
        self.assertTrue(all(r['v'] == 'remote' for r in merged['records']))
        self.assertEqual(merge_snapshot(self.local, {}, MERGE_REPLACE), {'records': [], 'batchRecords': []})

    def test_newer_updated_at_wins(self):
        merged = merge_snapshot(self.local, self.remote, MERGE_UPDATED_AT)
        by_id = {r['id']: r['v'] for r in merged['records']}
        self.assertEqual(by_id, {'a': 'remote', 'b': 'local', 'c': 'remote', 'd': 'remote'})
        # Remote copy without a timestamp loses
        self.assertEqual(merged['batchRecords'][0]['v'], 'local')

    def test_unknown_strategy(self):
        with self.assertRaises(SyncError):
            merge_snapshot(self.local, self.remote, 'newest_device')


class KVDBClientTestCase(unittest.TestCase):
    def setUp(self):
        self.client = KVDBClient('https://kv.example/', timeout=3)

    def test_url(self):
        self.assertEqual(self.client.url_for('farm a'), f'https://kv.example/{DEFAULT_BUCKET}/FARM_A')

    @mock.patch('cloud_sync.requests.post')
    def test_save(self, post):
        post.return_value = fake_response(200)
        self.assertTrue(self.client.save('farm', {'records': []}))
        post.assert_called_once_with(f'https://kv.example/{DEFAULT_BUCKET}/FARM', json={'records': []}, timeout=3)

        post.return_value = fake_response(500)
        self.assertFalse(self.client.save('farm', {}))

        post.side_effect = requests.ConnectionError('offline')
        self.assertFalse(self.client.save('farm', {}))

    @mock.patch('cloud_sync.requests.get')
    def test_fetch(self, get):
        get.return_value = fake_response(200, {'records': [{'id': 'a'}]})
        self.assertEqual(self.client.fetch('farm'), {'records': [{'id': 'a'}]})

        get.return_value = fake_response(404)
        self.assertIsNone(self.client.fetch('farm'))

        get.return_value = fake_response(503)
        self.assertIsNone(self.client.fetch('farm'))

        get.side_effect = requests.Timeout('slow')
        self.assertIsNone(self.client.fetch('farm'))

    def test_short_key_is_rejected_before_any_request(self):
        with mock.patch('cloud_sync.requests.get') as get:
            with self.assertRaises(SyncError):
                self.client.fetch('a')
            get.assert_not_called()


class JSONBlobClientTestCase(unittest.TestCase):
    def setUp(self):
        self.client = JSONBlobClient('https://blob.example/api/jsonBlob')

    @mock.patch('cloud_sync.requests.post')
    def test_create_returns_blob_id(self, post):
        post.return_value = fake_response(201, headers={'Location': 'https://blob.example/api/jsonBlob/1234567890'})
        self.assertEqual(self.client.create({'records': []}), '1234567890')

        post.return_value = fake_response(201)
        self.assertEqual(self.client.create({}), '')

        post.side_effect = requests.ConnectionError('offline')
        self.assertEqual(self.client.create({}), '')

    @mock.patch('cloud_sync.requests.put')
    def test_save_keeps_key_case(self, put):
        put.return_value = fake_response(200)
        self.assertTrue(self.client.save(' abcDEF123 ', {}))
        self.assertEqual(put.call_args[0][0], 'https://blob.example/api/jsonBlob/abcDEF123')

    @mock.patch('cloud_sync.requests.get')
    def test_fetch(self, get):
        get.return_value = fake_response(200, {'records': []})
        self.assertEqual(self.client.fetch('abc123'), {'records': []})

        get.return_value = fake_response(404)
        self.assertIsNone(self.client.fetch('abc123'))


class LocalClientTestCase(unittest.TestCase):
    def test_round_trip_through_settings(self):
        store = {}
        client = LocalClient(store.get, store.__setitem__)

        self.assertIsNone(client.fetch('farm'))
        self.assertTrue(client.save('farm', {'records': [1]}))
        self.assertEqual(client.fetch('FARM'), {'records': [1]})
        self.assertIn('sync_snapshot:FARM', store)


class MakeClientTestCase(unittest.TestCase):
    def test_backends(self):
        self.assertIsInstance(make_client({}), KVDBClient)
        self.assertIsInstance(make_client({'SYNC_BACKEND': 'JSONBlob'}), JSONBlobClient)
        self.assertIsInstance(make_client({'SYNC_BACKEND': 'local'}, dict().get, dict().__setitem__), LocalClient)

        client = make_client({'SYNC_BACKEND': 'kvdb', 'SYNC_BUCKET': 'other', 'SYNC_TIMEOUT': 2})
        self.assertEqual(client.bucket, 'other')
        self.assertEqual(client.timeout, 2)

    def test_bad_configuration(self):
        with self.assertRaises(SyncError):
            make_client({'SYNC_BACKEND': 'ftp'})
        with self.assertRaises(SyncError):
            make_client({'SYNC_BACKEND': 'local'})


class PushDebouncerTestCase(unittest.TestCase):
    def test_only_last_trigger_runs(self):
        done = threading.Event()
        calls = []

        def push():
            calls.append(1)
            done.set()

        debouncer = PushDebouncer(0.05, push)
        for _ in range(5):
            debouncer.trigger()
        self.assertTrue(debouncer.pending)

        self.assertTrue(done.wait(2))
        # Give any stray timer a chance to fire
        threading.Event().wait(0.2)
        self.assertEqual(calls, [1])
        self.assertFalse(debouncer.pending)

    def test_cancel(self):
        calls = []
        debouncer = PushDebouncer(0.05, lambda: calls.append(1))
        debouncer.trigger()
        debouncer.cancel()
        threading.Event().wait(0.2)
        self.assertEqual(calls, [])
        self.assertFalse(debouncer.pending)

    def test_callback_errors_are_logged(self):
        def boom():
            raise RuntimeError('backend down')

        debouncer = PushDebouncer(0, boom)
        with self.assertLogs(cloud_sync.logger, level='ERROR'):
            debouncer._run()


if __name__ == '__main__':
    unittest.main()
