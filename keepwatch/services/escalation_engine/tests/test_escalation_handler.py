"""Tests for the inbound submission endpoints."""
import json
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from keepwatch.shared.database import RepositoryError
from keepwatch.shared.models import Channel
from keepwatch.services.escalation_engine import PipelineSettings
from keepwatch.services.escalation_engine.runtime import build_runtime
from keepwatch.services.moderation_service import ItemStatus


SALT = "test_salt_that_is_at_least_32_characters_long"


@pytest.fixture
def runtime():
    rt = build_runtime(PipelineSettings(
        pastor_emails=("pastor@example.org",),
        alert_from_email="alerts@example.org",
        push_topic_arn="arn:aws:sns:us-east-1:123456789012:pastor-alerts",
        pii_hash_salt=SALT,
    ))
    rt.executor.dispatchers[Channel.EMAIL]._ses_client = MagicMock()
    rt.executor.dispatchers[Channel.PUSH]._sns_client = MagicMock()
    yield rt
    rt.shutdown()


@pytest.fixture
def client(runtime, monkeypatch):
    from keepwatch.services.escalation_engine import handler
    monkeypatch.setattr(handler, "runtime", runtime)
    handler.app.config['TESTING'] = True
    with handler.app.test_client() as client:
        yield client


class TestHealthEndpoint:
    def test_health_returns_200(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'
        assert data['service'] == 'escalation-engine'
    
    def test_ready_without_database(self, client):
        assert client.get('/ready').status_code == 200


class TestSubmissionsEndpoint:
    def test_create_returns_id(self, client, runtime):
        response = client.post(
            '/submissions',
            json={
                'subject_id': 'user-1',
                'text': 'Please pray for my family',
                'metadata': {'category': 'family', 'name': 'Sam'},
            },
        )
        
        assert response.status_code == 201
        data = json.loads(response.data)
        assert runtime.moderation_store.get(data['id']).owner_name == 'Sam'
    
    def test_response_never_mentions_safety(self, client):
        response = client.post(
            '/submissions',
            json={'subject_id': 'user-1', 'text': 'I want to die'},
        )
        
        assert response.status_code == 201
        assert set(json.loads(response.data)) == {'id'}
    
    def test_email_provider_failure_still_stores(self, client, runtime):
        ses = runtime.executor.dispatchers[Channel.EMAIL]._ses_client
        ses.send_email.side_effect = ClientError(
            {"Error": {"Code": "InternalFailure", "Message": "500"}}, "SendEmail"
        )
        
        response = client.post(
            '/submissions',
            json={'subject_id': 'user-1', 'text': 'I want to die'},
        )
        
        assert response.status_code == 201
        item_id = json.loads(response.data)['id']
        assert runtime.moderation_store.get(item_id).crisis_detected is True
    
    def test_missing_text(self, client):
        response = client.post('/submissions', json={'subject_id': 'user-1'})
        assert response.status_code == 400
    
    def test_unknown_source(self, client):
        response = client.post(
            '/submissions',
            json={'subject_id': 'user-1', 'text': 'hi', 'metadata': {'source': 'sms'}},
        )
        assert response.status_code == 400
    
    def test_store_failure_returns_500(self, client, runtime):
        with patch.object(
            runtime.moderation_store, "create", side_effect=RepositoryError("db down")
        ):
            response = client.post(
                '/submissions',
                json={'subject_id': 'user-1', 'text': 'Please pray for me'},
            )
        assert response.status_code == 500
    
    def test_public_listing_hides_hidden_items(self, client, runtime):
        visible = runtime.pipeline.submit_content('user-1', 'Pray for rain').record_id
        hidden = runtime.pipeline.submit_content('user-2', 'Pray for sun').record_id
        runtime.moderation_store.set_status(hidden, ItemStatus.HIDDEN)
        
        response = client.get('/submissions')
        
        assert response.status_code == 200
        items = json.loads(response.data)['items']
        assert [i['id'] for i in items] == [visible]
        assert 'owner_id' not in items[0]
        assert 'flag_count' not in items[0]


class TestCounterEndpoints:
    def test_flag(self, client, runtime):
        item_id = runtime.pipeline.submit_content('user-1', 'Pray for rain').record_id
        
        response = client.post(f'/submissions/{item_id}/flag')
        
        assert response.status_code == 200
        assert json.loads(response.data)['flag_count'] == 1
    
    def test_flag_unknown_item(self, client):
        assert client.post('/submissions/prayer_missing/flag').status_code == 404
    
    def test_heart(self, client, runtime):
        item_id = runtime.pipeline.submit_content('user-1', 'Pray for rain').record_id
        
        response = client.post(f'/submissions/{item_id}/heart')
        
        assert json.loads(response.data)['heart_count'] == 1


class TestGuidanceEndpoint:
    def test_minor_disclosure_requires_capture(self, client):
        response = client.post(
            '/guidance/messages',
            json={'session_id': 'sess-1', 'text': 'my uncle touches me', 'age': '14'},
        )
        
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['session_id'] == 'sess-1'
        assert data['capture_required'] is True
    
    def test_ordinary_message(self, client):
        response = client.post(
            '/guidance/messages',
            json={'session_id': 'sess-2', 'text': 'How do I forgive my brother?', 'age': 16},
        )
        
        assert json.loads(response.data)['capture_required'] is False
    
    def test_paused_session_stays_paused(self, client, runtime):
        runtime.report_flow.begin_capture('sess-1')
        
        response = client.post(
            '/guidance/messages',
            json={'session_id': 'sess-1', 'text': 'Are you still there?', 'age': 14},
        )
        
        assert json.loads(response.data)['capture_required'] is True
    
    def test_resolved_session_is_not_paused_again(self, client, runtime):
        runtime.report_flow.begin_capture('sess-1')
        runtime.report_flow.skip('sess-1')
        
        response = client.post(
            '/guidance/messages',
            json={'session_id': 'sess-1', 'text': 'he is hurting me again', 'age': 14},
        )
        
        assert json.loads(response.data)['capture_required'] is False
    
    def test_invalid_age(self, client):
        response = client.post(
            '/guidance/messages',
            json={'session_id': 'sess-3', 'text': 'hello', 'age': 'fifteen'},
        )
        assert response.status_code == 400
    
    def test_missing_session(self, client):
        response = client.post('/guidance/messages', json={'text': 'hello'})
        assert response.status_code == 400


class TestServing:
    def test_memory_backend_refuses_to_serve(self, runtime):
        with pytest.raises(RuntimeError, match="STORAGE_BACKEND=postgres"):
            runtime.require_shared_storage()
