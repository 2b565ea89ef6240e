import io

import pytest

from core.csrf import TOKEN_HEADER
from services import content as content_service
from tests.conftest import login


@pytest.fixture
def admin_headers(admin_session):
    return {TOKEN_HEADER: admin_session['csrf_token']}


def _create(client, headers, **fields):
    body = {'title': 'Corridor economics', 'content': '<p>Trade routes</p>'}
    body.update(fields)
    response = client.post('/api/articles', json=body, headers=headers)
    assert response.status_code == 201, response.get_json()
    return response.get_json()


def test_create_article_sanitizes_and_slugs(client, admin_headers):
    article = _create(client, admin_headers, content='<p>Sssupply chains</p><p></p><script>x()</script>')
    assert article['slug'] == 'corridor-economics'
    assert article['content'] == '<p>Supply chains</p>'
    assert article['status'] == 'draft'
    assert article['reading_time_minutes'] == 1


def test_duplicate_titles_get_unique_slugs(client, admin_headers):
    first = _create(client, admin_headers)
    second = _create(client, admin_headers)
    assert first['slug'] == 'corridor-economics'
    assert second['slug'] == 'corridor-economics-2'


def test_mutation_requires_csrf_token(client, admin_session):
    response = client.post('/api/articles', json={'title': 'x', 'content': 'y'})
    assert response.status_code == 403

    response = client.post('/api/articles', json={'title': 'x', 'content': 'y'},
                           headers={TOKEN_HEADER: 'f' * 64})
    assert response.status_code == 403


def test_mutation_requires_admin(client, regular_user):
    csrf_token = login(client, regular_user)['csrf_token']
    response = client.post('/api/articles', json={'title': 'x', 'content': 'y'},
                           headers={TOKEN_HEADER: csrf_token})
    assert response.status_code == 403
    assert response.get_json() == {'error': 'Admin access required'}


def test_mutation_requires_session(client):
    response = client.post('/api/articles', json={'title': 'x', 'content': 'y'})
    assert response.status_code == 401


def test_invalid_category_rejected(client, admin_headers):
    response = client.post('/api/articles', json={'title': 't', 'content': 'c', 'category': 'Gossip'},
                           headers=admin_headers)
    assert response.status_code == 400


def test_non_text_article_fields_rejected(client, admin_headers):
    response = client.post('/api/articles', json={'title': ['x'], 'content': 'c'}, headers=admin_headers)
    assert response.status_code == 400
    assert response.get_json() == {'error': 'title must be a string'}

    response = client.post('/api/articles', json=['title'], headers=admin_headers)
    assert response.status_code == 400


def test_publish_flow_and_public_reads(client, admin_headers):
    article = _create(client, admin_headers, category='Geopolitics')
    assert client.get(f"/api/articles/{article['slug']}").status_code == 404

    published = client.post(f"/api/articles/{article['id']}/publish", headers=admin_headers).get_json()
    assert published['status'] == 'published'
    assert published['published_at']

    assert client.get(f"/api/articles/{article['slug']}").get_json()['id'] == article['id']
    assert client.get(f"/api/articles/{article['id']}").get_json()['slug'] == article['slug']

    listing = client.get('/api/articles?category=Geopolitics').get_json()['articles']
    assert [a['id'] for a in listing] == [article['id']]
    assert client.get('/api/articles?category=Strategy').get_json()['articles'] == []


def test_update_and_delete(client, admin_headers):
    article = _create(client, admin_headers)
    updated = client.put(f"/api/articles/{article['id']}", json={'title': 'Revised', 'featured': True},
                         headers=admin_headers).get_json()
    assert updated['title'] == 'Revised'
    assert updated['featured'] is True

    assert client.delete(f"/api/articles/{article['id']}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/articles/{article['id']}", headers=admin_headers).status_code == 404


def test_featured_archive_and_search(client, admin_headers):
    for i in range(5):
        _create(client, admin_headers, title=f'Note {i}', status='published', featured=i < 2,
                content=f'<p>{"Baltic" if i == 3 else "Pacific"} corridor</p>')
    _create(client, admin_headers, title='Hidden draft', content='<p>Baltic</p>')

    assert len(client.get('/api/articles/featured').get_json()['articles']) == 2

    archive = client.get('/api/articles/archive?page=2&page_size=2').get_json()
    assert archive['total'] == 5
    assert archive['page'] == 2
    assert len(archive['items']) == 2
    assert archive['months'][0]['count'] == 5

    found = client.get('/api/articles/search?q=baltic').get_json()['articles']
    assert [a['title'] for a in found] == ['Note 3']


def test_my_articles_for_admin_include_drafts(client, admin_headers):
    _create(client, admin_headers, title='Draft one')
    mine = client.get('/api/articles/mine').get_json()['articles']
    assert [a['title'] for a in mine] == ['Draft one']


def test_partners(client, admin_headers):
    created = client.post('/api/partners', json={'name': 'Harbor Group', 'display_order': 2},
                          headers=admin_headers)
    assert created.status_code == 201
    partner_id = created.get_json()['id']

    client.post('/api/partners', json={'name': 'Atlas', 'display_order': 1}, headers=admin_headers)
    names = [p['name'] for p in client.get('/api/partners').get_json()['partners']]
    assert names == ['Atlas', 'Harbor Group']

    client.put(f'/api/partners/{partner_id}', json={'is_active': False}, headers=admin_headers)
    assert [p['name'] for p in client.get('/api/partners').get_json()['partners']] == ['Atlas']

    assert client.delete(f'/api/partners/{partner_id}', headers=admin_headers).status_code == 200
    assert client.post('/api/partners', json={}, headers=admin_headers).status_code == 400


def test_website_content(client, admin_headers):
    response = client.put('/api/content/hero/title', json={'value': '<b>Clarity</b> from complexity'},
                          headers=admin_headers)
    assert response.status_code == 200

    client.put('/api/content/about/summary', json={'value': 'Advisory firm'}, headers=admin_headers)

    assert client.get('/api/content/hero').get_json()['content'] == {'title': response.get_json()['content_value']}
    everything = client.get('/api/content').get_json()['content']
    assert set(everything) == {'hero_title', 'about_summary'}

    assert client.put('/api/content/hero/title', json={}, headers=admin_headers).status_code == 400


def test_upload_and_serve_media(client, admin_headers):
    data = {'file': (io.BytesIO(b'\x89PNG fake'), 'cover image.png', 'image/png')}
    response = client.post('/api/storage/images', data=data, headers=admin_headers,
                           content_type='multipart/form-data')
    assert response.status_code == 201
    body = response.get_json()
    assert body['path'] == 'cover_image.png'
    assert body['publicUrl'] == '/storage/v1/object/public/images/cover_image.png'

    served = client.get(body['publicUrl'])
    assert served.status_code == 200
    assert served.data == b'\x89PNG fake'


def test_upload_rejects_non_images_in_image_bucket(client, admin_headers):
    data = {'file': (io.BytesIO(b'MZ'), 'tool.exe', 'application/octet-stream')}
    response = client.post('/api/storage/images', data=data, headers=admin_headers,
                           content_type='multipart/form-data')
    assert response.status_code == 400


def test_oversized_upload_is_rejected_as_client_error(app, client, admin_headers):
    app.config['MAX_CONTENT_LENGTH'] = 64
    data = {'file': (io.BytesIO(b'x' * 1024), 'large.png', 'image/png')}
    response = client.post('/api/storage/images', data=data, headers=admin_headers,
                           content_type='multipart/form-data')
    assert response.status_code == 413
    assert 'error' in response.get_json()


def test_direct_service_create(app, admin_user):
    article = content_service.create_article({'title': 'Service level', 'content': '<p>x</p>'},
                                             author_id=admin_user['id'])
    assert content_service.get_article(article.id, published_only=False).slug == 'service-level'
