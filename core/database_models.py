from datetime import datetime
import uuid

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import (
    Column, Integer, Float, String, DateTime, JSON, Text, Boolean, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship

db = SQLAlchemy()


def _uuid() -> str:
    return str(uuid.uuid4())


class User(db.Model):
    __tablename__ = 'users'

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    password_salt = Column(String(64), nullable=False)
    display_name = Column(String(100))
    last_sign_in_at = Column(DateTime)
    last_activity_at = Column(DateTime)
    sessions_revoked_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    roles = relationship("UserRole", back_populates="user", cascade="all, delete-orphan")
    mfa_factors = relationship("MFAFactor", back_populates="user", cascade="all, delete-orphan")


class UserRole(db.Model):
    __tablename__ = 'user_roles'
    __table_args__ = (UniqueConstraint('user_id', 'role'),)

    id = Column(Integer, primary_key=True)
    user_id = Column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    role = Column(String(20), nullable=False)  # 'admin', 'editor', 'user'
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="roles")


class MFAFactor(db.Model):
    __tablename__ = 'mfa_factors'

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    factor_type = Column(String(20), default='totp')
    friendly_name = Column(String(100))
    secret = Column(Text, nullable=False)  # Fernet-encrypted
    status = Column(String(20), default='unverified')  # 'unverified', 'verified'
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="mfa_factors")


class Article(db.Model):
    __tablename__ = 'articles'

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(200), nullable=False)
    slug = Column(String(220), nullable=False, unique=True, index=True)
    excerpt = Column(String(500))
    content = Column(Text, nullable=False)
    meta_description = Column(String(300))
    category = Column(String(100), default='Strategy')
    featured = Column(Boolean, default=False)
    featured_image = Column(String(500))
    status = Column(String(20), default='draft', index=True)  # 'draft', 'published', 'archived'
    author_id = Column(String(36), ForeignKey('users.id'))
    published_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Partner(db.Model):
    __tablename__ = 'partners'

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(150), nullable=False)
    logo_url = Column(String(500))
    website_url = Column(String(500))
    description = Column(Text)
    display_order = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class WebsiteContent(db.Model):
    __tablename__ = 'website_content'
    __table_args__ = (UniqueConstraint('section', 'content_key'),)

    id = Column(Integer, primary_key=True)
    section = Column(String(100), nullable=False, index=True)  # 'hero', 'about', ...
    content_key = Column(String(100), nullable=False)
    content_value = Column(Text)
    is_active = Column(Boolean, default=True)
    updated_by = Column(String(36), ForeignKey('users.id'))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SecurityAuditLog(db.Model):
    __tablename__ = 'security_audit_log'

    id = Column(Integer, primary_key=True)
    action = Column(String(100), nullable=False, index=True)
    user_id = Column(String(36))
    ip_address = Column(String(64))
    severity = Column(String(20), default='medium')
    details = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class VisitorAnalytics(db.Model):
    __tablename__ = 'visitor_analytics'

    id = Column(Integer, primary_key=True)
    path = Column(String(500))
    referrer = Column(String(255))  # Hostname only
    utm_source = Column(String(100))
    utm_medium = Column(String(100))
    utm_campaign = Column(String(100))
    device_type = Column(String(20))
    browser = Column(String(50))
    country = Column(String(2))
    region = Column(String(100))
    session_id = Column(String(100))
    user_id = Column(String(36))
    page_load_time = Column(Float)
    engagement_time = Column(Float)
    ip_hash = Column(String(64), index=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class CookieConsentTracking(db.Model):
    __tablename__ = 'cookie_consent_tracking'

    id = Column(Integer, primary_key=True)
    ip_address = Column(String(64), nullable=False, unique=True)
    consent_data = Column(JSON)  # {"necessary": bool, "analytics": bool, "marketing": bool}
    last_updated = Column(DateTime, default=datetime.utcnow)


class SocialMediaPost(db.Model):
    __tablename__ = 'social_media_posts'

    id = Column(String(36), primary_key=True, default=_uuid)
    platform = Column(String(20), nullable=False)  # 'linkedin', 'instagram'
    article_id = Column(String(36), ForeignKey('articles.id'))
    content = Column(Text)
    media_url = Column(String(500))
    external_id = Column(String(255))
    status = Column(String(20), default='pending')  # 'pending', 'published', 'failed'
    error_message = Column(Text)
    published_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)


class LinkedInPost(db.Model):
    __tablename__ = 'linkedin_posts'

    id = Column(Integer, primary_key=True)
    external_id = Column(String(255), nullable=False, unique=True)
    post_type = Column(String(20), default='post')  # 'post', 'article'
    title = Column(String(300))
    content = Column(Text)
    url = Column(String(500))
    image_url = Column(String(500))
    published_at = Column(DateTime)
    raw_payload = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SocialToken(db.Model):
    __tablename__ = 'social_tokens'

    id = Column(Integer, primary_key=True)
    platform = Column(String(20), nullable=False)
    user_id = Column(String(36), ForeignKey('users.id'))
    access_token = Column(Text, nullable=False)
    is_encrypted = Column(Boolean, default=False)
    expires_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class IntegrationLog(db.Model):
    __tablename__ = 'integration_logs'

    id = Column(Integer, primary_key=True)
    integration_type = Column(String(50), nullable=False)
    operation = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False)  # 'success', 'error'
    response_data = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)
