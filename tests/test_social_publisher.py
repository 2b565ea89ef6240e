import httpx
import pytest

from core.database_models import db, SocialMediaPost, SocialToken
from core.errors import NotFoundError
from services import content as content_service
from tasks.social_publisher import article_share_payload, migrate_tokens, publish_article_to_linkedin


def test_share_payload_prefers_excerpt(app, admin_user):
    article = content_service.create_article({'title': 'Black Sea corridor', 'content': '<p>Long body</p>',
                                              'excerpt': 'Short take'}, author_id=admin_user['id'])
    payload = article_share_payload(article, message=None)
    assert payload == {'title': 'Black Sea corridor', 'content': 'Short take', 'message': None,
                       'articleId': article.id}


def test_publish_article_task(app, admin_user):
    article = content_service.create_article({'title': 'Gulf logistics', 'content': '<p>Body</p>',
                                              'status': 'published'}, author_id=admin_user['id'])
    app.config['HTTP_TRANSPORT'] = httpx.MockTransport(
        lambda request: httpx.Response(201, headers={'x-restli-id': 'urn:li:share:7'})
    )

    result = publish_article_to_linkedin.run(article.id, user_id=admin_user['id'])
    assert result['post_id'] == 'urn:li:share:7'
    assert SocialMediaPost.query.filter_by(article_id=article.id, status='published').count() == 1


def test_publish_unknown_article(app):
    with pytest.raises(NotFoundError):
        publish_article_to_linkedin.run('missing')


def test_migrate_tokens_task(app, admin_user):
    db.session.add(SocialToken(platform='linkedin', user_id=admin_user['id'], access_token='plain'))
    db.session.commit()
    assert migrate_tokens.run() == {'success': True, 'migratedTokens': 1}
