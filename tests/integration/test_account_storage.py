"""
Integration tests for the per-customer shipping address and storage maintenance.
"""

from pharmacy.database import get_session
from pharmacy.models import StorageEntry

JSON = {'Accept': 'application/json'}

ADDRESS = {
    'full_name': 'Sara Customer',
    'phone': '0501234567',
    'address': 'King Fahd Rd 12',
    'city': 'Riyadh',
}


class TestShippingAddress:

    def test_requires_login(self, client, backend):
        response = client.get('/account/shipping-address', headers=JSON)
        assert response.status_code == 401

    def test_save_and_load(self, logged_in_client):
        response = logged_in_client.put('/account/shipping-address', json=ADDRESS)

        assert response.status_code == 200
        data = logged_in_client.get('/account/shipping-address', headers=JSON).get_json()
        assert data['address']['city'] == 'Riyadh'
        assert data['address']['postal_code'] == ''

    def test_missing_fields(self, logged_in_client):
        response = logged_in_client.put('/account/shipping-address', json={'full_name': 'Sara'})

        assert response.status_code == 400
        assert {'phone', 'address', 'city'} <= set(response.get_json()['errors'])

    def test_address_is_stored_per_customer(self, logged_in_client, session):
        logged_in_client.put('/account/shipping-address', json=ADDRESS)

        keys = [row.key for row in session.query(StorageEntry).all()]
        assert 'last_shipping_address_42' in keys
        assert 'last_shipping_address' not in keys


class TestPurgeLegacyStorage:

    def _seed(self, session):
        session.add_all([
            StorageEntry(browser_id='a' * 32, key='shipping_address', value='{}'),
            StorageEntry(browser_id='b' * 32, key='last_shipping_address', value='{}'),
            StorageEntry(browser_id='a' * 32, key='last_shipping_address_42', value='{}'),
        ])
        session.commit()

    def test_dry_run_keeps_rows(self, app, session):
        self._seed(session)

        result = app.test_cli_runner().invoke(args=['purge-legacy-storage', '--dry-run'])

        assert '2 legacy entries would be removed.' in result.output
        assert get_session().query(StorageEntry).count() == 3

    def test_purge_keeps_scoped_rows(self, app, session):
        self._seed(session)

        result = app.test_cli_runner().invoke(args=['purge-legacy-storage'])

        assert result.exit_code == 0
        assert [row.key for row in get_session().query(StorageEntry).all()] == ['last_shipping_address_42']
