from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from support import TabDatabaseTestCase
from tabapp.config import settings
from tabapp.db import get_db
from tabapp.main import create_app
from tabapp.models import WebSession
from tabapp.services.billing_cycle_service import today


class TabsRouterTests(TabDatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        expires_at = datetime.now(tz=timezone.utc) + timedelta(hours=1)
        self.db.add_all(
            [
                WebSession(session_token='owner-token', user_id=self.owner.id, expires_at=expires_at),
                WebSession(session_token='customer-token', user_id=self.customer.id, expires_at=expires_at),
                WebSession(
                    session_token='revoked-token',
                    user_id=self.owner.id,
                    expires_at=expires_at,
                    revoked_at=datetime.now(tz=timezone.utc),
                ),
            ]
        )
        self.db.commit()

        app = create_app(self.session_factory)

        def override_get_db():
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        self.client = TestClient(app)
        self.addCleanup(self.client.close)
        self.tabs_url = f'/shops/{self.shop.id}/tabs'

    def _login(self, token: str) -> None:
        self.client.cookies.set(settings.session_cookie_name, token)

    def _payload(self, **overrides) -> dict:
        start = today() - timedelta(days=1)
        payload = {
            'payment_method': 'IN_PERSON',
            'organization': 'Debate Team',
            'display_name': 'Debate Team Tab',
            'start_date': start.isoformat(),
            'end_date': (start + timedelta(days=90)).isoformat(),
            'daily_start_time': '08:00:00',
            'daily_end_time': '18:00:00',
            'active_days_of_wk': 31,
            'dollar_limit_per_order': '25.00',
            'verification_method': 'EMAIL',
            'billing_interval_days': 7,
            'verification_list': ['coach@example.com'],
            'location_ids': [self.location.id],
        }
        payload.update(overrides)
        return payload

    def _create_tab(self) -> int:
        self._login('owner-token')
        response = self.client.post(self.tabs_url, json=self._payload())
        self.assertEqual(response.status_code, 201)
        return response.json()['id']

    def test_health(self) -> None:
        self.assertEqual(self.client.get('/health').json(), {'status': 'ok'})

    def test_requires_a_session(self) -> None:
        self.assertEqual(self.client.get(self.tabs_url).status_code, 401)

    def test_revoked_session_is_ignored(self) -> None:
        self._login('revoked-token')
        self.assertEqual(self.client.get(self.tabs_url).status_code, 401)

    def test_create_order_and_read_back(self) -> None:
        tab_id = self._create_tab()

        response = self.client.post(
            f'{self.tabs_url}/{tab_id}/add-order',
            json={'items': [{'id': self.coffee.id, 'quantity': 2}]},
        )
        self.assertEqual(response.status_code, 200)
        bill_id = response.json()['bill_id']

        overview = self.client.get(f'{self.tabs_url}/{tab_id}').json()
        self.assertEqual(overview['display_name'], 'Debate Team Tab')
        self.assertEqual(overview['verification_list'], ['coach@example.com'])
        self.assertTrue(overview['is_pending_balance'])
        [bill] = overview['bills']
        self.assertEqual(bill['id'], bill_id)
        self.assertEqual(bill['items'][0]['quantity'], 2)

        self.assertEqual(self.client.post(f'{self.tabs_url}/{tab_id}/bills/{bill_id}/close').status_code, 204)
        overview = self.client.get(f'{self.tabs_url}/{tab_id}').json()
        self.assertFalse(overview['is_pending_balance'])
        self.assertEqual(overview['bills'][0]['end_date'], today().isoformat())

    def test_update_approve_and_close(self) -> None:
        tab_id = self._create_tab()

        response = self.client.patch(f'{self.tabs_url}/{tab_id}', json=self._payload(display_name='Renamed'))
        self.assertEqual(response.status_code, 204)
        listed = self.client.get(self.tabs_url).json()
        self.assertEqual(listed[0]['pending_update']['display_name'], 'Renamed')

        self.assertEqual(self.client.post(f'{self.tabs_url}/{tab_id}/approve').status_code, 204)
        overview = self.client.get(f'{self.tabs_url}/{tab_id}').json()
        self.assertEqual((overview['status'], overview['display_name']), ('CONFIRMED', 'Renamed'))

        self.assertEqual(self.client.post(f'{self.tabs_url}/{tab_id}/close').status_code, 204)
        response = self.client.post(
            f'{self.tabs_url}/{tab_id}/add-order', json={'items': [{'id': self.coffee.id, 'quantity': 1}]}
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['detail'], 'Tab is closed')

    def test_replace_verification_list(self) -> None:
        tab_id = self._create_tab()
        response = self.client.put(
            f'{self.tabs_url}/{tab_id}/verification-list', json={'emails': ['one@example.com', 'two@example.com']}
        )
        self.assertEqual(response.status_code, 204)
        overview = self.client.get(f'{self.tabs_url}/{tab_id}').json()
        self.assertEqual(overview['verification_list'], ['one@example.com', 'two@example.com'])

    def test_overdrawn_removal_reports_lines(self) -> None:
        tab_id = self._create_tab()
        order = {'items': [{'id': self.bagel.id, 'quantity': 1}]}
        self.client.post(f'{self.tabs_url}/{tab_id}/add-order', json=order)

        response = self.client.post(
            f'{self.tabs_url}/{tab_id}/remove-order', json={'items': [{'id': self.bagel.id, 'quantity': 2}]}
        )

        self.assertEqual(response.status_code, 400)
        [line] = response.json()['errors']['items']
        self.assertEqual((line['item_id'], line['current'], line['delta']), (self.bagel.id, 1, -2))

    def test_missing_tab(self) -> None:
        self._login('owner-token')
        response = self.client.get(f'{self.tabs_url}/9999')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {'detail': 'Tab not found'})

    def test_customer_cannot_approve(self) -> None:
        tab_id = self._create_tab()
        self._login('customer-token')
        self.assertEqual(self.client.post(f'{self.tabs_url}/{tab_id}/approve').status_code, 403)

    def test_malformed_body(self) -> None:
        self._login('owner-token')
        response = self.client.post(self.tabs_url, json=self._payload(billing_interval_days=0))
        self.assertEqual(response.status_code, 422)


if __name__ == '__main__':
    unittest.main()
