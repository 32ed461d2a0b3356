import json
from mockito import mock, verify, unstub, when
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import TestCase

from fakes import ORIGIN, FakeFetcher, get, make_settings, manifest_routes, response

from offcache.cache import CacheStorage
from offcache.model import PendingRequest, Request, Response
from offcache.notify import Notifier
from offcache.retry import FileRequestStore, RetryQueue
from offcache.worker import (
    ActivateEvent,
    FetchEvent,
    InstallError,
    InstallEvent,
    InvalidStateTransition,
    MessageEvent,
    NotificationClickEvent,
    PeriodicSyncEvent,
    PushEvent,
    ServiceWorker,
    SyncEvent,
    WorkerNotActive,
    WorkerState,
)


class WorkerTestCase(TestCase):
    def setUp(self):
        self.directory = TemporaryDirectory()
        root = Path(self.directory.name)
        self.settings = make_settings(root)
        self.storage = CacheStorage(self.settings.cache_directory)
        self.queue = RetryQueue(FileRequestStore(self.settings.queue_directory))
        self.network = FakeFetcher(manifest_routes())
        self.notifier = mock(Notifier)
        when(self.notifier).show(...).thenReturn(None)
        when(self.notifier).close(...).thenReturn(None)
        when(self.notifier).open_window(...).thenReturn(None)
        self.sut = ServiceWorker(self.settings, self.storage, self.queue, fetcher=self.network, notifier=self.notifier)

    def tearDown(self):
        self.sut.close()
        unstub()
        self.directory.cleanup()

    def activate(self):
        self.sut.dispatch(InstallEvent())
        self.sut.dispatch(ActivateEvent())
        self.network.calls.clear()


class TestLifecycle(WorkerTestCase):
    def test_install_populates_both_buckets(self):
        self.sut.dispatch(InstallEvent())

        self.assertEqual(WorkerState.WAITING, self.sut.state)
        self.assertIsNotNone(self.storage.match(get(ORIGIN + '/styles.css'), 'static-v2'))
        self.assertIsNotNone(self.storage.match(get(ORIGIN + '/'), 'static-v2'))
        self.assertIsNotNone(self.storage.match(get('https://fonts.googleapis.com/css2?family=Inter'), 'dynamic-v2'))

    def test_install_fails_when_any_asset_is_unreachable(self):
        del self.network.routes[ORIGIN + '/styles.css']

        with self.assertRaises(InstallError):
            self.sut.dispatch(InstallEvent())

        self.assertEqual(WorkerState.REDUNDANT, self.sut.state)
        self.assertEqual([], self.storage.names(), 'A failed install stores nothing')

    def test_install_fails_on_error_status(self):
        self.network.routes[ORIGIN + '/styles.css'] = response(b'', status=404)

        with self.assertRaises(InstallError):
            self.sut.dispatch(InstallEvent())

    def test_activate_deletes_only_stale_buckets(self):
        self.storage.put('static-v1', get(ORIGIN + '/old.css'), response(b'old'))
        self.storage.put('dynamic-v1', get(ORIGIN + '/api/old'), response(b'old'))

        self.sut.dispatch(InstallEvent())
        self.sut.dispatch(ActivateEvent())

        self.assertEqual(WorkerState.ACTIVE, self.sut.state)
        self.assertEqual(['dynamic-v2', 'static-v2'], self.storage.names())
        self.assertIsNotNone(self.storage.match(get(ORIGIN + '/styles.css'), 'static-v2'))

    def test_cannot_activate_before_install(self):
        self.storage.put('static-v1', get(ORIGIN + '/styles.css'), response(b'v1'))
        self.storage.put('dynamic-v1', get(ORIGIN + '/api/projects'), response(b'[]'))

        with self.assertRaises(InvalidStateTransition):
            self.sut.dispatch(ActivateEvent())

        self.assertEqual(WorkerState.PARSED, self.sut.state)
        self.assertEqual(['dynamic-v1', 'static-v1'], self.storage.names())

    def test_failed_install_cannot_activate(self):
        self.storage.put('static-v1', get(ORIGIN + '/styles.css'), response(b'v1'))
        del self.network.routes[ORIGIN + '/styles.css']
        with self.assertRaises(InstallError):
            self.sut.dispatch(InstallEvent())

        with self.assertRaises(InvalidStateTransition):
            self.sut.dispatch(ActivateEvent())

        self.assertEqual(WorkerState.REDUNDANT, self.sut.state)
        self.assertEqual(['static-v1'], self.storage.names())

    def test_activate_twice(self):
        self.activate()
        self.storage.put('static-v3', get(ORIGIN + '/styles.css'), response(b'v3'))

        with self.assertRaises(InvalidStateTransition):
            self.sut.dispatch(ActivateEvent())

        self.assertEqual(['dynamic-v2', 'static-v2', 'static-v3'], self.storage.names())

    def test_waiting_worker_does_not_serve(self):
        self.sut.dispatch(InstallEvent())

        with self.assertRaises(WorkerNotActive):
            self.sut.dispatch(FetchEvent(get(ORIGIN + '/styles.css')))

    def test_unknown_event(self):
        with self.assertRaises(TypeError):
            self.sut.dispatch(object())


class TestFetch(WorkerTestCase):
    def test_static_asset_is_served_from_cache(self):
        self.activate()

        result = self.sut.dispatch(FetchEvent(get(ORIGIN + '/styles.css')))

        self.assertEqual(b'body {}', result.body)
        self.assertEqual([], self.network.calls)

    def test_precached_asset_with_vary_header_is_served_offline(self):
        self.network.routes[ORIGIN + '/styles.css'] = Response(status=200, reason='OK',
                                                               headers={'Content-Type': 'text/css',
                                                                        'Vary': 'Accept-Encoding'},
                                                               body=b'body {}')
        self.activate()
        self.network.routes.clear()

        result = self.sut.dispatch(FetchEvent(Request(method='GET',
                                                      uri=ORIGIN + '/styles.css',
                                                      headers={'Accept-Encoding': 'gzip, deflate'})))

        self.assertEqual(200, result.status)
        self.assertEqual(b'body {}', result.body)
        self.assertEqual([], self.network.calls)

    def test_api_request_prefers_network(self):
        self.activate()
        url = ORIGIN + '/api/projects'
        self.network.routes[url] = response(b'[1]')
        self.sut.dispatch(FetchEvent(get(url)))
        self.network.routes[url] = response(b'[1, 2]')

        self.assertEqual(b'[1, 2]', self.sut.dispatch(FetchEvent(get(url))).body)

    def test_external_resource_is_refreshed_in_background(self):
        self.activate()
        url = 'https://fonts.googleapis.com/css2?family=Inter'
        self.network.routes[url] = response(b'@font-face { new }')

        result = self.sut.dispatch(FetchEvent(get(url)))
        self.sut.drain()

        self.assertEqual(b'@font-face {}', result.body)
        self.assertEqual(b'@font-face { new }', self.storage.match(get(url), 'dynamic-v2').body)

    def test_non_get_requests_pass_through(self):
        self.activate()
        url = ORIGIN + '/contact'
        self.network.routes[url] = response(b'thanks')

        result = self.sut.dispatch(FetchEvent(Request(method='POST', uri=url, body=b'x=1')))

        self.assertEqual(b'thanks', result.body)
        self.assertIsNone(self.storage.match(get(url)))


class TestMessages(WorkerTestCase):
    def test_performance_metrics_reply(self):
        self.activate()
        self.sut.dispatch(FetchEvent(get(ORIGIN + '/styles.css')))
        self.network.routes[ORIGIN + '/app.js'] = response(b'')
        self.sut.dispatch(FetchEvent(get(ORIGIN + '/app.js')))
        replies = []

        self.sut.dispatch(MessageEvent({'type': 'GET_PERFORMANCE_METRICS'}, reply=replies.append))

        self.assertEqual([{
            'hitRatio': 50.0,
            # Three manifest assets, one pre-cached font and the new script.
            'totalCachedEntries': 5,
            'networkRequestCount': 5,
        }], replies)

    def test_metrics_start_at_zero(self):
        replies = []

        self.sut.dispatch(MessageEvent({'type': 'GET_PERFORMANCE_METRICS'}, reply=replies.append))

        self.assertEqual([{'hitRatio': 0, 'totalCachedEntries': 0, 'networkRequestCount': 0}], replies)

    def test_other_messages_are_ignored(self):
        replies = []

        self.assertIsNone(self.sut.dispatch(MessageEvent({'type': 'PING'}, reply=replies.append)))
        self.assertEqual([], replies)


class TestSync(WorkerTestCase):
    def test_contact_form_sync_replays_queue(self):
        self.activate()
        self.queue.enqueue(PendingRequest(url=ORIGIN + '/contact', body='message=hi', id='abc'))
        self.network.routes[ORIGIN + '/contact'] = response(b'thanks')

        self.assertTrue(self.sut.dispatch(SyncEvent('contact-form')))
        self.assertEqual([], self.queue.pending())

    def test_contact_form_sync_reports_leftovers(self):
        self.activate()
        self.queue.enqueue(PendingRequest(url=ORIGIN + '/contact', body='message=hi', id='abc'))

        self.assertFalse(self.sut.dispatch(SyncEvent('contact-form')))
        self.assertEqual(['abc'], [p.id for p in self.queue.pending()])

    def test_unknown_tag(self):
        self.assertTrue(self.sut.dispatch(SyncEvent('something-else')))

    def test_periodic_cache_update_refreshes_dynamic_bucket(self):
        self.activate()
        url = 'https://fonts.googleapis.com/css2?family=Inter'
        self.network.routes[url] = response(b'@font-face { v2 }')

        refreshed = self.sut.dispatch(PeriodicSyncEvent('cache-update'))

        self.assertEqual(1, refreshed)
        self.assertEqual(b'@font-face { v2 }', self.storage.match(get(url), 'dynamic-v2').body)

    def test_periodic_cache_update_survives_failures(self):
        self.activate()
        del self.network.routes['https://fonts.googleapis.com/css2?family=Inter']

        self.assertEqual(0, self.sut.dispatch(PeriodicSyncEvent('cache-update')))
        self.assertIsNotNone(self.storage.match(get('https://fonts.googleapis.com/css2?family=Inter'), 'dynamic-v2'))


class TestNotifications(WorkerTestCase):
    def test_push_shows_notification_with_two_actions(self):
        payload = json.dumps({'title': 'New project', 'body': 'Take a look', 'primaryKey': 7}).encode('utf-8')

        notification = self.sut.dispatch(PushEvent(payload))

        self.assertEqual('New project', notification.title)
        self.assertEqual('Take a look', notification.body)
        self.assertEqual(7, notification.data['primaryKey'])
        self.assertEqual(['explore', 'close'], [action.action for action in notification.actions])
        verify(self.notifier).show(notification)

    def test_empty_push_is_ignored(self):
        self.assertIsNone(self.sut.dispatch(PushEvent(None)))
        verify(self.notifier, times=0).show(...)

    def test_malformed_push_is_ignored(self):
        self.assertIsNone(self.sut.dispatch(PushEvent(b'not json')))
        verify(self.notifier, times=0).show(...)

    def test_explore_click_opens_root(self):
        notification = self.sut.dispatch(PushEvent('{"title": "t", "body": "b"}'))

        self.sut.dispatch(NotificationClickEvent(notification, 'explore'))

        verify(self.notifier).close(notification)
        verify(self.notifier).open_window(ORIGIN + '/')

    def test_close_click_only_closes(self):
        notification = self.sut.dispatch(PushEvent('{"title": "t", "body": "b"}'))

        self.sut.dispatch(NotificationClickEvent(notification, 'close'))

        verify(self.notifier).close(notification)
        verify(self.notifier, times=0).open_window(...)
