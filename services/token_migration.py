# services/token_migration.py
"""
Encrypt social access tokens that were stored in plain text
"""

import logging
from typing import Optional

from core.database_models import db, SocialToken
from core.security_manager import get_security_manager

logger = logging.getLogger(__name__)


def migrate_plaintext_tokens(user_id: Optional[str] = None) -> int:
    """
    Fernet-encrypt every social token not yet marked encrypted

    Runs in one transaction and writes a single audit entry. Running it again
    finds nothing to migrate.

    Returns:
        Number of tokens migrated
    """
    security_manager = get_security_manager()
    pending = SocialToken.query.filter_by(is_encrypted=False).all()

    for token in pending:
        token.access_token = security_manager.encrypt_token(token.access_token)
        token.is_encrypted = True

    db.session.commit()
    logger.info(f"Token migration encrypted {len(pending)} tokens")

    security_manager.log_security_event('token_migration_executed', {
        'migrated_count': len(pending),
        'execution_context': 'function',
    }, severity='medium', user_id=user_id)

    return len(pending)
