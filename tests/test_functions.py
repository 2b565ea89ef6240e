import json

import httpx
import pytest

from core.database_models import (
    db, IntegrationLog, LinkedInPost, SecurityAuditLog, SocialMediaPost, SocialToken, VisitorAnalytics,
)
from core.security_manager import get_security_manager, hash_ip
from services import auth as auth_service
from services import content as content_service


def _mock_transport(app, handler):
    calls = []

    def record(request):
        calls.append(request)
        return handler(request)

    app.config['HTTP_TRANSPORT'] = httpx.MockTransport(record)
    return calls


# Envelope

def test_preflight_returns_cors_headers(client):
    response = client.open('/functions/ingest-analytics', method='OPTIONS')
    assert response.status_code == 204
    assert response.headers['Access-Control-Allow-Origin'] == '*'
    assert 'content-type' in response.headers['Access-Control-Allow-Headers']


def test_health_query_answers_status(client):
    response = client.get('/functions/search-users?health=1')
    body = response.get_json()
    assert response.status_code == 200
    assert body['status'] == 'ok'
    assert body['function'] == 'search-users'
    assert response.headers['Access-Control-Allow-Origin'] == '*'


def test_wrong_method_is_rejected(client):
    response = client.get('/functions/ingest-analytics')
    assert response.status_code == 405
    assert response.get_json() == {'error': 'Method not allowed'}
    assert response.headers['Access-Control-Allow-Origin'] == '*'


def test_errors_carry_cors_headers(client):
    response = client.post('/functions/search-users', json={'searchTerm': 'a'})
    assert response.status_code == 401
    assert response.headers['Access-Control-Allow-Origin'] == '*'


# Consent-gated analytics

def test_ingest_requires_consent(client):
    response = client.post('/functions/ingest-analytics', json={'path': '/'})
    assert response.status_code == 403
    assert response.get_json() == {'error': 'Analytics consent required', 'consentRequired': True}
    assert VisitorAnalytics.query.count() == 0


def test_ingest_after_consent_stores_hashed_ip(client):
    consent = client.post('/functions/track-cookie-consent',
                          json={'consent': {'analytics': True, 'marketing': False}})
    assert consent.status_code == 200

    response = client.post('/functions/ingest-analytics', json={
        'path': '/articles/x',
        'referrer': 'https://www.linkedin.com/feed/?trk=1',
        'country': 'deu',
        'page_load_time': '812.5',
    })
    assert response.status_code == 200

    event = VisitorAnalytics.query.one()
    assert event.referrer == 'www.linkedin.com'
    assert event.country == 'DE'
    assert event.page_load_time == 812.5
    assert event.ip_hash == hash_ip('127.0.0.1')


def test_declined_analytics_consent_blocks_ingest(client):
    client.post('/functions/track-cookie-consent', json={'consent': {'analytics': False}})
    response = client.post('/functions/ingest-analytics', json={'path': '/'})
    assert response.status_code == 403


def test_consent_lookup(client):
    assert client.get('/functions/track-cookie-consent').get_json()['hasConsent'] is False

    client.post('/functions/track-cookie-consent', json={'consent': {'analytics': True}})
    body = client.get('/functions/track-cookie-consent').get_json()
    assert body['hasConsent'] is True
    assert body['consent'] == {'necessary': True, 'analytics': True, 'marketing': False}


def test_consent_body_required(client):
    response = client.post('/functions/track-cookie-consent', json={})
    assert response.status_code == 400


def test_article_analytics_requires_admin(client, user_bearer):
    assert client.get('/functions/article-analytics').status_code == 401
    assert client.get('/functions/article-analytics', headers=user_bearer).status_code == 403


def test_article_analytics_summary(client, admin_bearer):
    client.post('/functions/track-cookie-consent', json={'consent': {'analytics': True}})
    for path in ('/', '/articles/a', '/articles/a'):
        client.post('/functions/ingest-analytics', json={'path': path, 'session_id': 's1'})

    response = client.get('/functions/article-analytics?days=7', headers=admin_bearer)
    body = response.get_json()
    assert response.status_code == 200
    assert body['success'] is True
    assert body['data']['metrics']['page_views']['value'] == 3
    assert body['data']['top_pages'][0] == {'value': '/articles/a', 'count': 2}
    assert body['data']['period_days'] == 7


# Operations

def test_health_check(client):
    response = client.get('/functions/health-check')
    body = response.get_json()
    assert response.status_code == 200
    assert body['status'] == 'healthy'
    assert body['services']['database'] == 'ok'
    assert IntegrationLog.query.filter_by(integration_type='health_check').count() == 1


def test_search_users_auth(client, user_bearer):
    assert client.post('/functions/search-users', json={'searchTerm': 'x'}).status_code == 401
    response = client.post('/functions/search-users', json={'searchTerm': 'x'},
                           headers={'Authorization': 'Bearer not-a-token'})
    assert response.status_code == 401
    assert client.post('/functions/search-users', json={'searchTerm': 'x'},
                       headers=user_bearer).status_code == 403


def test_search_users_validates_term(client, admin_bearer):
    for body in ({}, {'searchTerm': ''}, {'searchTerm': '   '}, {'searchTerm': 42}):
        response = client.post('/functions/search-users', json=body, headers=admin_bearer)
        assert response.status_code == 400
        assert response.get_json() == {'error': 'Invalid search term'}


def test_search_users_caps_results(app, client, admin_bearer):
    for i in range(12):
        auth_service.create_user(f'analyst{i:02d}@example.com', 'long-enough-password')

    response = client.post('/functions/search-users', json={'searchTerm': 'ANALYST'}, headers=admin_bearer)
    users = response.get_json()['users']
    assert response.status_code == 200
    assert len(users) == 10
    assert users[0] == {'user_id': users[0]['user_id'], 'email': 'analyst00@example.com',
                        'display_name': 'analyst00'}


def test_search_users_treats_wildcards_literally(app, client, admin_bearer):
    auth_service.create_user('field_ops@example.com', 'long-enough-password')
    auth_service.create_user('fieldXops@example.com', 'long-enough-password')

    for term, expected in (('_', ['field_ops@example.com']), ('%', []),
                           ('  FIELD_ops ', ['field_ops@example.com'])):
        response = client.post('/functions/search-users', json={'searchTerm': term}, headers=admin_bearer)
        assert response.status_code == 200
        assert [user['email'] for user in response.get_json()['users']] == expected


def test_migrate_tokens(app, client, admin_bearer, admin_user):
    db.session.add_all([
        SocialToken(platform='linkedin', user_id=admin_user['id'], access_token='plain-1'),
        SocialToken(platform='instagram', user_id=admin_user['id'], access_token='plain-2'),
    ])
    db.session.commit()

    response = client.post('/functions/migrate-tokens-secure', headers=admin_bearer)
    assert response.status_code == 200
    assert response.get_json() == {'success': True, 'migratedTokens': 2,
                                   'message': 'Token migration completed successfully'}

    db.session.expire_all()
    tokens = SocialToken.query.order_by(SocialToken.id).all()
    assert all(token.is_encrypted for token in tokens)
    assert get_security_manager().decrypt_token(tokens[0].access_token) == 'plain-1'
    assert SecurityAuditLog.query.filter_by(action='token_migration_executed').count() == 1

    again = client.post('/functions/migrate-tokens-secure', headers=admin_bearer)
    assert again.get_json()['migratedTokens'] == 0


def test_migrate_tokens_queued(app, client, admin_bearer, admin_user):
    db.session.add(SocialToken(platform='linkedin', user_id=admin_user['id'], access_token='plain'))
    db.session.commit()

    response = client.post('/functions/migrate-tokens-secure', headers=admin_bearer, json={'queue': True})
    assert response.status_code == 202
    assert response.get_json()['queued'] is True

    db.session.expire_all()
    assert SocialToken.query.one().is_encrypted


def test_csp_report_is_logged(client):
    report = {'csp-report': {'document-uri': 'https://polrydian.com/', 'violated-directive': 'script-src'}}
    response = client.post('/functions/csp-report', data=json.dumps(report),
                           content_type='application/csp-report')
    assert response.status_code == 204

    entry = SecurityAuditLog.query.filter_by(action='csp_violation').one()
    assert entry.details['violated_directive'] == 'script-src'


def test_csp_report_tolerates_garbage(client):
    response = client.post('/functions/csp-report', data='not json', content_type='text/plain')
    assert response.status_code == 204


@pytest.mark.parametrize('body', [['oops'], [1, {'body': 'text'}], {'csp-report': 'text'}, 42])
def test_csp_report_ignores_entries_that_are_not_objects(client, body):
    response = client.post('/functions/csp-report', json=body)
    assert response.status_code == 204

    entry = SecurityAuditLog.query.filter_by(action='csp_violation').one()
    assert entry.details['violated_directive'] is None


# Social publishing

def test_publish_to_linkedin(app, client, admin_bearer):
    def handler(request):
        assert request.url.path == '/rest/posts'
        assert request.headers['Authorization'] == 'Bearer test-linkedin-token'
        assert request.headers['LinkedIn-Version'] == app.config['LINKEDIN_API_VERSION']
        return httpx.Response(201, headers={'x-restli-id': 'urn:li:share:42'})

    calls = _mock_transport(app, handler)
    response = client.post('/functions/publish-to-linkedin', headers=admin_bearer, json={
        'title': 'Corridor outlook', 'content': 'Shipping lanes are shifting.', 'articleId': 'abc',
    })
    body = response.get_json()

    assert response.status_code == 200
    assert body['post_id'] == 'urn:li:share:42'
    assert body['post_url'] == 'https://www.linkedin.com/feed/update/urn:li:share:42'

    sent = json.loads(calls[0].content)
    assert sent['author'] == 'urn:li:person:test'
    assert sent['commentary'] == ('Corridor outlook\n\nShipping lanes are shifting.'
                                  '\n\nRead more: https://polrydian.com/articles/abc')
    assert SocialMediaPost.query.filter_by(platform='linkedin', status='published').count() == 1


def test_publish_to_linkedin_queued_for_stored_article(app, client, admin_bearer, admin_user):
    article = content_service.create_article({'title': 'Caspian routes', 'content': '<p>Body</p>',
                                              'excerpt': 'Short take', 'status': 'published'},
                                             author_id=admin_user['id'])
    calls = _mock_transport(app, lambda request: httpx.Response(201, headers={'x-restli-id': 'urn:li:share:8'}))

    response = client.post('/functions/publish-to-linkedin', headers=admin_bearer,
                           json={'queue': True, 'articleId': article.id})
    body = response.get_json()
    assert response.status_code == 202
    assert body['queued'] is True
    assert body['taskId']

    # Eager in testing: the worker already ran
    assert json.loads(calls[0].content)['commentary'].startswith('Caspian routes\n\nShort take')
    db.session.expire_all()
    assert SocialMediaPost.query.filter_by(article_id=article.id, status='published').count() == 1


def test_publish_to_linkedin_queue_requires_article(client, admin_bearer):
    response = client.post('/functions/publish-to-linkedin', headers=admin_bearer,
                           json={'queue': True, 'content': 'Text'})
    assert response.status_code == 400
    assert response.get_json() == {'error': 'articleId is required to queue a post'}


def test_publish_to_instagram_queued(app, client, admin_bearer):
    def handler(request):
        if request.url.path == '/1784/media':
            return httpx.Response(200, json={'id': 'container-2'})
        return httpx.Response(200, json={'id': 'media-10'})

    calls = _mock_transport(app, handler)
    response = client.post('/functions/publish-to-instagram', headers=admin_bearer, json={
        'queue': True, 'caption': 'Queued', 'image_url': 'https://cdn.example.org/b.jpg',
    })
    assert response.status_code == 202
    assert [call.url.path for call in calls] == ['/1784/media', '/1784/media_publish']

    response = client.post('/functions/publish-to-instagram', headers=admin_bearer,
                           json={'queue': True, 'caption': 'No image'})
    assert response.status_code == 400


def test_publish_to_linkedin_upstream_failure(app, client, admin_bearer):
    _mock_transport(app, lambda request: httpx.Response(503, json={'message': 'unavailable'}))
    response = client.post('/functions/publish-to-linkedin', headers=admin_bearer,
                           json={'content': 'Text'})
    assert response.status_code == 500
    assert SocialMediaPost.query.filter_by(platform='linkedin', status='failed').count() == 1


def test_publish_to_linkedin_requires_content(app, client, admin_bearer):
    response = client.post('/functions/publish-to-linkedin', headers=admin_bearer, json={'title': 'Only'})
    assert response.status_code == 400


def test_publish_to_linkedin_without_credentials(app, client, admin_bearer):
    app.config['LINKEDIN_ACCESS_TOKEN'] = None
    response = client.post('/functions/publish-to-linkedin', headers=admin_bearer, json={'content': 'x'})
    assert response.status_code == 400
    assert response.get_json()['setup_required'] is True


def test_publish_to_instagram(app, client, admin_bearer):
    def handler(request):
        if request.url.path == '/1784/media':
            return httpx.Response(200, json={'id': 'container-1'})
        if request.url.path == '/1784/media_publish':
            assert b'creation_id=container-1' in request.content
            return httpx.Response(200, json={'id': 'media-9'})
        return httpx.Response(404)

    calls = _mock_transport(app, handler)
    response = client.post('/functions/publish-to-instagram', headers=admin_bearer, json={
        'caption': 'New analysis', 'image_url': 'https://cdn.example.org/a.jpg',
    })
    assert response.status_code == 200
    assert response.get_json()['media_id'] == 'media-9'
    assert [call.url.path for call in calls] == ['/1784/media', '/1784/media_publish']


def test_publish_to_instagram_requires_image(client, admin_bearer):
    response = client.post('/functions/publish-to-instagram', headers=admin_bearer, json={'caption': 'Hi'})
    assert response.status_code == 400
    assert response.get_json() == {'error': 'Instagram posts require an image'}


def test_publish_to_instagram_rejects_non_text_caption(client, admin_bearer):
    response = client.post('/functions/publish-to-instagram', headers=admin_bearer,
                           json={'caption': ['Hi'], 'image_url': 'https://cdn.example.org/a.jpg'})
    assert response.status_code == 400
    assert response.get_json() == {'error': 'caption must be a string'}


def test_publish_to_linkedin_rejects_non_text_fields(client, admin_bearer):
    response = client.post('/functions/publish-to-linkedin', headers=admin_bearer, json={'content': {'x': 1}})
    assert response.status_code == 400


# Zapier webhook

def test_zapier_webhook_upserts(client):
    payload = {'type': 'linkedin_post', 'data': {
        'id': 'urn:li:activity:1', 'text': 'First version', 'published_at': '2025-02-01T08:00:00Z',
    }}
    assert client.post('/functions/zapier-linkedin-webhook', json=payload).status_code == 200

    payload['data']['text'] = 'Edited'
    response = client.post('/functions/zapier-linkedin-webhook', json=payload)
    assert response.get_json() == {'success': True, 'message': 'Data stored successfully',
                                   'id': 'urn:li:activity:1'}

    post = LinkedInPost.query.one()
    assert post.content == 'Edited'
    assert post.published_at.isoformat() == '2025-02-01T08:00:00'


def test_zapier_webhook_rejects_unknown_type(client):
    response = client.post('/functions/zapier-linkedin-webhook', json={'type': 'tweet', 'data': {'id': '1'}})
    assert response.status_code == 400


@pytest.mark.parametrize('payload', [
    {'type': 'linkedin_post', 'data': 'x'},
    {'type': 'linkedin_post', 'data': ['urn:li:activity:1']},
    {'type': 'linkedin_post', 'data': {'id': 'urn:li:activity:2', 'published_at': 1738396800}},
])
def test_zapier_webhook_rejects_malformed_data(client, payload):
    response = client.post('/functions/zapier-linkedin-webhook', json=payload)
    assert response.status_code == 400
    assert LinkedInPost.query.count() == 0


# FRED

def test_fetch_fred_series(app, client):
    def handler(request):
        assert request.url.params['series_id'] == 'UNRATE'
        assert request.url.params['api_key'] == 'test-fred-key'
        return httpx.Response(200, json={'observations': [
            {'date': '2025-03-01', 'value': '4.1'},
            {'date': '2025-02-01', 'value': '.'},
            {'date': '2025-01-01', 'value': '4.0'},
        ]})

    _mock_transport(app, handler)
    response = client.get('/functions/fetch-fred-data?series_id=UNRATE')
    assert response.status_code == 200
    assert response.get_json()['observations'] == [
        {'date': '2025-01-01', 'value': 4.0},
        {'date': '2025-03-01', 'value': 4.1},
    ]


def test_fetch_fred_indicators(app, client):
    _mock_transport(app, lambda request: httpx.Response(200, json={'observations': [
        {'date': '2025-01-01', 'value': '1.5'},
    ]}))
    response = client.post('/functions/fetch-fred-data', json={'indicators': ['CPI', 'bogus']})
    data = response.get_json()['data']
    assert [row['indicator'] for row in data] == ['CPI']
    assert data[0]['series_id'] == 'CPIAUCSL'
    assert data[0]['latest'] == {'date': '2025-01-01', 'value': 1.5}


def test_fetch_fred_requires_series(client):
    assert client.get('/functions/fetch-fred-data').status_code == 400


# Calendly

def test_calendly_rejects_untrusted_origin(client):
    response = client.post('/functions/calendly-event', json={
        'origin': 'https://evil.example', 'data': {'event': 'calendly.event_scheduled'},
    })
    assert response.status_code == 400
    assert response.get_json()['accepted'] is False


def test_calendly_requires_origin(client):
    response = client.post('/functions/calendly-event', json={'data': {'event': 'calendly.event_scheduled'}})
    assert response.status_code == 400


@pytest.mark.parametrize('origin', ['https://calendly.com', 'https://www.calendly.com/'])
def test_calendly_conversion_counted_once_per_session(client, origin):
    message = {'origin': origin, 'data': {'event': 'calendly.event_scheduled', 'payload': {}}}

    first = client.post('/functions/calendly-event', json=message).get_json()
    second = client.post('/functions/calendly-event', json=message).get_json()

    assert first == {'accepted': True, 'event': 'calendly.event_scheduled', 'conversion': True}
    assert second['conversion'] is False
    assert IntegrationLog.query.filter_by(integration_type='calendly').count() == 1


def test_calendly_view_events_are_not_conversions(client):
    response = client.post('/functions/calendly-event', json={
        'origin': 'https://calendly.com', 'data': {'event': 'calendly.event_type_viewed'},
    })
    assert response.get_json() == {'accepted': True, 'event': 'calendly.event_type_viewed',
                                   'conversion': False}


@pytest.mark.parametrize('message', [
    {'origin': 'https://calendly.com', 'data': 'x'},
    {'origin': 'https://calendly.com', 'data': {'event': ['calendly.event_scheduled']}},
    {'origin': 'https://calendly.com', 'data': {'event': 'calendly.event_scheduled', 'payload': 'x'}},
    {'origin': ['https://calendly.com'], 'data': {'event': 'calendly.event_scheduled'}},
])
def test_calendly_rejects_malformed_messages(client, message):
    response = client.post('/functions/calendly-event', json=message)
    assert response.status_code == 400
    assert 'error' in response.get_json()
    assert IntegrationLog.query.filter_by(integration_type='calendly').count() == 0


def test_functions_reject_non_object_bodies(client):
    response = client.post('/functions/zapier-linkedin-webhook', json=['linkedin_post'])
    assert response.status_code == 400
    assert response.get_json() == {'error': 'JSON object expected'}
