"""
Unit tests for the admin review queue.
"""

import pytest

from pharmacy.exceptions import (
    AuthError, ConflictError, NotFoundError, ServerError, ValidationError, error_from_response
)
from pharmacy.services.cache_service import ADMIN_SCOPE
from pharmacy.services.events import wholesale_request_rejected, wholesale_upgrade_approved
from pharmacy.services.wholesale_admin_service import (
    DEFAULT_REJECTION_REASON, CustomersLoaded, QueueLoaded, QueueState, RequestRemoved,
    WholesaleAdminService, WholesaleRequest, reduce_queue, validate_request_id
)
from tests.fakes import OTHER_REQUEST_ID, REQUEST_ID, FakeAdminApi, make_response


def record(request_id, user_id=42, **extra):
    data = {'id': request_id, 'user_id': user_id, 'company_name': 'Al Noor', 'status': 'pending'}
    data.update(extra)
    return data


def queue(*records):
    return QueueState(requests=tuple(WholesaleRequest.from_payload(r) for r in records))


@pytest.fixture
def admin_api():
    return FakeAdminApi(
        requests_payload={'data': [record(REQUEST_ID), record(OTHER_REQUEST_ID, user_id=43)]},
        customers=[{'id': 40, 'email': 'old@example.com'}],
    )


class TestRequestId:

    def test_accepts_uuid(self):
        assert validate_request_id(f' {REQUEST_ID.upper()} ') == REQUEST_ID.upper()

    @pytest.mark.parametrize('value', ['', None, '123', 'not-a-uuid', REQUEST_ID + 'x'])
    def test_rejects_everything_else(self, value):
        with pytest.raises(ValidationError) as exc:
            validate_request_id(value)
        assert 'request_id' in exc.value.field_errors

    @pytest.mark.parametrize('action', ['approve', 'reject', 'delete'])
    def test_malformed_id_never_reaches_backend(self, admin_api, action):
        service = WholesaleAdminService(admin_api)
        with pytest.raises(ValidationError):
            getattr(service, action)(QueueState(), '../users/1')
        assert admin_api.calls == []


class TestReduceQueue:

    def test_transitions(self):
        state = reduce_queue(QueueState(), QueueLoaded(queue(record(REQUEST_ID), record(OTHER_REQUEST_ID)).requests))
        state = reduce_queue(state, CustomersLoaded(({'id': 1},)))
        state = reduce_queue(state, RequestRemoved(REQUEST_ID))

        assert [r.id for r in state.requests] == [OTHER_REQUEST_ID]
        assert state.customers == ({'id': 1},)

    def test_removing_unknown_request_is_noop(self):
        state = queue(record(REQUEST_ID))
        assert reduce_queue(state, RequestRemoved(OTHER_REQUEST_ID)) == state

    def test_unknown_event(self):
        with pytest.raises(TypeError):
            reduce_queue(QueueState(), 'reload')


class TestLoading:

    def test_load_queue_asks_for_pending(self, admin_api):
        state = WholesaleAdminService(admin_api, queue_limit=50).load_queue(QueueState(), page=2, search='noor')

        assert len(state.requests) == 2
        assert admin_api.calls == [('list', {'status': 'pending', 'limit': 50, 'page': 2, 'search': 'noor'})]

    def test_nested_user_fields(self):
        item = WholesaleRequest.from_payload({
            'id': REQUEST_ID, 'user': {'id': 7, 'email': 'a@example.com', 'full_name': 'Amal'}
        })
        assert (item.user_id, item.customer_email, item.customer_name) == (7, 'a@example.com', 'Amal')

    def test_customers_are_memoized(self, admin_api, fake_cache):
        service = WholesaleAdminService(admin_api, cache=fake_cache)

        service.load_customers(QueueState())
        state = service.load_customers(QueueState())

        assert admin_api.calls.count(('customers',)) == 1
        assert state.customers == ({'id': 40, 'email': 'old@example.com'},)
        assert (ADMIN_SCOPE, 'wholesale', 'customers') in fake_cache.data

    def test_force_reload_bypasses_cache(self, admin_api, fake_cache):
        service = WholesaleAdminService(admin_api, cache=fake_cache)
        service.load_customers(QueueState())
        admin_api.customers = [{'id': 42}]

        state = service.load_customers(QueueState(), force=True)

        assert state.customers == ({'id': 42},)


class TestApprove:

    def test_removes_request_and_refreshes_customers(self, admin_api, fake_cache):
        received = []
        wholesale_upgrade_approved.connect(lambda sender, **kw: received.append(kw), weak=False)
        service = WholesaleAdminService(admin_api, cache=fake_cache)
        state = service.load_queue(QueueState())
        service.load_customers(state)
        admin_api.customers = [{'id': 40}, {'id': 42}]

        state, outcome = service.approve(state, REQUEST_ID)

        assert ('status', REQUEST_ID, 'approved', None) in admin_api.calls
        assert [r.id for r in state.requests] == [OTHER_REQUEST_ID]
        assert state.customers == ({'id': 40}, {'id': 42})
        assert outcome.stale is False
        assert outcome.user_id == 42
        assert received[-1] == {'request_id': REQUEST_ID, 'user_id': 42}

    def test_already_approved_is_stale(self, admin_api):
        admin_api.update_error = ConflictError()
        service = WholesaleAdminService(admin_api)
        state = service.load_queue(QueueState())
        admin_api.requests_payload = [record(OTHER_REQUEST_ID, user_id=43)]

        state, outcome = service.approve(state, REQUEST_ID)

        assert outcome.stale is True
        assert 'already processed' in outcome.message
        assert [r.id for r in outcome.requests] == [OTHER_REQUEST_ID]
        assert [call[0] for call in admin_api.calls] == ['list', 'status', 'list']

    def test_backend_already_processed_reply_is_stale(self, admin_api):
        admin_api.update_error = error_from_response(make_response(400, {
            'success': False,
            'message': 'تم معالجة هذا الطلب مسبقاً',
            'error': 'حالة الطلب الحالية: approved',
        }))
        service = WholesaleAdminService(admin_api)
        state = service.load_queue(QueueState())
        admin_api.requests_payload = [record(OTHER_REQUEST_ID, user_id=43)]

        state, outcome = service.approve(state, REQUEST_ID)

        assert outcome.stale is True
        assert [r.id for r in state.requests] == [OTHER_REQUEST_ID]

    def test_user_id_from_status_update_envelope(self, admin_api, mocker):
        received = []
        wholesale_upgrade_approved.connect(lambda sender, **kw: received.append(kw), weak=False)
        mocker.patch.object(admin_api, 'update_status', return_value={
            'success': True,
            'message': 'Request updated',
            'data': {
                'message': 'Request approved',
                'request': {'id': REQUEST_ID, 'status': 'approved', 'user_id': 77},
            },
        })

        _, outcome = WholesaleAdminService(admin_api).approve(QueueState(), REQUEST_ID)

        assert outcome.user_id == 77
        assert received[-1] == {'request_id': REQUEST_ID, 'user_id': 77}

    def test_stale_keeps_queue_when_refresh_fails(self, admin_api, mocker):
        admin_api.update_error = NotFoundError()
        service = WholesaleAdminService(admin_api)
        state = service.load_queue(QueueState())
        mocker.patch.object(admin_api, 'list_requests', side_effect=ServerError())

        state, outcome = service.approve(state, REQUEST_ID)

        assert outcome.stale is True
        assert [r.id for r in state.requests] == [OTHER_REQUEST_ID]

    def test_server_error_propagates(self, admin_api):
        admin_api.update_error = ServerError()
        service = WholesaleAdminService(admin_api)
        state = service.load_queue(QueueState())

        with pytest.raises(ServerError):
            service.approve(state, REQUEST_ID)

    def test_auth_error_propagates(self, admin_api):
        admin_api.update_error = AuthError()
        with pytest.raises(AuthError):
            WholesaleAdminService(admin_api).approve(QueueState(), REQUEST_ID)

    def test_customers_refresh_failure_still_approves(self, admin_api, mocker):
        service = WholesaleAdminService(admin_api)
        state = service.load_queue(QueueState())
        mocker.patch.object(admin_api, 'list_customers', side_effect=ServerError())

        state, outcome = service.approve(state, REQUEST_ID)

        assert outcome.stale is False
        assert state.find(REQUEST_ID) is None


class TestReject:

    def test_blank_reason_uses_default(self, admin_api):
        received = []
        wholesale_request_rejected.connect(lambda sender, **kw: received.append(kw), weak=False)
        service = WholesaleAdminService(admin_api)
        state = service.load_queue(QueueState())

        state, outcome = service.reject(state, OTHER_REQUEST_ID, '   ')

        assert ('status', OTHER_REQUEST_ID, 'rejected', DEFAULT_REJECTION_REASON) in admin_api.calls
        assert received[-1]['user_id'] == 43
        assert received[-1]['reason'] == DEFAULT_REJECTION_REASON
        assert state.find(OTHER_REQUEST_ID) is None

    def test_reason_is_trimmed(self, admin_api):
        WholesaleAdminService(admin_api).reject(QueueState(), REQUEST_ID, '  Expired ID  ')
        assert ('status', REQUEST_ID, 'rejected', 'Expired ID') in admin_api.calls

    def test_unknown_request_takes_user_from_response(self, admin_api, mocker):
        mocker.patch.object(admin_api, 'update_status', return_value={'data': {'id': REQUEST_ID, 'user_id': 99}})
        _, outcome = WholesaleAdminService(admin_api).reject(QueueState(), REQUEST_ID)
        assert outcome.user_id == 99


class TestDelete:

    def test_delete_removes_request(self, admin_api):
        service = WholesaleAdminService(admin_api)
        state = service.load_queue(QueueState())

        state, outcome = service.delete(state, REQUEST_ID)

        assert ('delete', REQUEST_ID) in admin_api.calls
        assert state.find(REQUEST_ID) is None
        assert outcome.to_dict()['stale'] is False

    def test_already_deleted_is_stale(self, admin_api):
        admin_api.delete_error = NotFoundError()
        service = WholesaleAdminService(admin_api)
        state = service.load_queue(QueueState())
        admin_api.requests_payload = []

        state, outcome = service.delete(state, REQUEST_ID)

        assert outcome.stale is True
        assert state.requests == ()

    def test_validation_error_propagates(self, admin_api):
        admin_api.delete_error = ValidationError('Cannot delete an approved request')
        with pytest.raises(ValidationError):
            WholesaleAdminService(admin_api).delete(QueueState(), REQUEST_ID)
