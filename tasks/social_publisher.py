# tasks/social_publisher.py
"""
Celery jobs for social publishing and token maintenance

Tasks wrap the synchronous integration services so the admin UI can queue
a post and return immediately. Called directly (or with
CELERY_TASK_ALWAYS_EAGER) they run inline.
"""

from typing import Any, Dict, Optional

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from celery.utils.log import get_task_logger

from core.database_models import Article, db
from core.errors import NotFoundError, UpstreamError
from services import integrations
from services.token_migration import migrate_plaintext_tokens

logger = get_task_logger(__name__)

celery_app = Celery('corridor_web')
celery_app.conf.update({
    # Serialization
    'task_serializer': 'json',
    'result_serializer': 'json',
    'accept_content': ['json'],

    # Timezone
    'timezone': 'UTC',
    'enable_utc': True,

    # Task Execution
    'task_acks_late': True,
    'task_reject_on_worker_lost': True,
    'worker_prefetch_multiplier': 1,
    'result_expires': 3600,

    # Routing
    'task_default_queue': 'default',
    'task_routes': {
        'tasks.social_publisher.publish_article_to_linkedin': {'queue': 'social_publishing'},
        'tasks.social_publisher.publish_image_to_instagram': {'queue': 'social_publishing'},
        'tasks.social_publisher.migrate_tokens': {'queue': 'maintenance'},
    },

    'worker_hijack_root_logger': False,
})


def init_celery(app) -> Celery:
    """Bind broker settings and the Flask app context to every task"""
    celery_app.conf.update({
        'broker_url': app.config['CELERY_BROKER_URL'],
        'result_backend': app.config['CELERY_BROKER_URL'],
        'task_always_eager': app.config.get('CELERY_TASK_ALWAYS_EAGER', False),
    })

    class ContextTask(celery_app.Task):
        """Make celery tasks work with Flask app context"""
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return self.run(*args, **kwargs)

    celery_app.Task = ContextTask
    app.extensions['celery'] = celery_app
    return celery_app


def article_share_payload(article: Article, message: Optional[str] = None) -> Dict[str, Any]:
    """LinkedIn share payload for a stored article"""
    return {
        'title': article.title,
        'content': article.excerpt or article.content,
        'message': message,
        'articleId': article.id,
    }


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def publish_article_to_linkedin(self, article_id: str, user_id: Optional[str] = None,
                                message: Optional[str] = None,
                                base_url: Optional[str] = None) -> Dict[str, Any]:
    """
    Share a stored article on LinkedIn

    Upstream failures are retried with exponential backoff; validation
    problems (missing token, unknown article) fail immediately.
    """
    article = db.session.get(Article, article_id)
    if article is None:
        raise NotFoundError(f'Article not found: {article_id}')

    try:
        result = integrations.publish_to_linkedin(article_share_payload(article, message),
                                                  user_id=user_id, base_url=base_url)
    except UpstreamError as e:
        logger.warning(f"LinkedIn publish failed for {article_id}: {e.message}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))

    logger.info(f"Article {article_id} shared on LinkedIn as {result.get('post_id')}")
    return result


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def publish_image_to_instagram(self, image_url: str, caption: Optional[str] = None,
                               user_id: Optional[str] = None) -> Dict[str, Any]:
    try:
        return integrations.publish_to_instagram({'image_url': image_url, 'caption': caption},
                                                 user_id=user_id)
    except UpstreamError as e:
        logger.warning(f"Instagram publish failed: {e.message}")
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


@celery_app.task
def migrate_tokens(user_id: Optional[str] = None) -> Dict[str, Any]:
    """Encrypt every stored social token still held in plaintext"""
    migrated = migrate_plaintext_tokens(user_id=user_id)
    return {'success': True, 'migratedTokens': migrated}


# Celery signal handlers for monitoring
@task_prerun.connect
def task_prerun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, **cwds):
    logger.info(f"Task {task.name} [{task_id}] starting")


@task_postrun.connect
def task_postrun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None,
                         retval=None, state=None, **cwds):
    logger.info(f"Task {task.name} [{task_id}] completed with state: {state}")


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, einfo=None, **cwds):
    logger.error(f"Task {sender.name} [{task_id}] failed: {exception}")
