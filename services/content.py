# services/content.py
"""
Content data access: articles, partners and website sections

Every write path runs rich-text fields through sanitize_html() so stored
content is already free of letter runs and empty blocks. Mutations are
broadcast on the realtime channel of their table.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_

from api.realtime import broadcast_change
from core.database_models import db, Article, Partner, WebsiteContent
from core.errors import NotFoundError, ValidationError
from core.html_sanitizer import optional_string, sanitize_form_data, sanitize_html, sanitize_text

logger = logging.getLogger(__name__)

ARTICLE_STATUSES = ('draft', 'published', 'archived')
ARTICLE_CATEGORIES = ('Strategy', 'Geopolitics', 'Philosophy', 'Defense & Aerospace')
ARTICLE_FIELDS = ('title', 'content', 'excerpt', 'meta_description', 'category',
                  'featured', 'featured_image', 'slug', 'status')
ARTICLE_TEXT_FIELDS = ('title', 'content', 'excerpt', 'meta_description', 'category',
                       'featured_image', 'slug', 'status')
PARTNER_FIELDS = ('name', 'logo_url', 'website_url', 'description', 'display_order', 'is_active')

WORDS_PER_MINUTE = 200


def slugify(title: str) -> str:
    slug = re.sub(r'[^a-z0-9\s-]', '', (title or '').lower())
    slug = re.sub(r'[\s_-]+', '-', slug).strip('-')
    return slug[:200] or 'article'


def _unique_slug(base: str, exclude_id: Optional[str] = None) -> str:
    slug = base
    counter = 2
    while True:
        query = Article.query.filter_by(slug=slug)
        if exclude_id:
            query = query.filter(Article.id != exclude_id)
        if query.first() is None:
            return slug
        slug = f"{base}-{counter}"
        counter += 1


def reading_time(content: Optional[str]) -> int:
    words = len(sanitize_text(content).split())
    return max(1, round(words / WORDS_PER_MINUTE))


def serialize_article(article: Article) -> Dict[str, Any]:
    return {
        'id': article.id,
        'title': article.title,
        'slug': article.slug,
        'excerpt': article.excerpt,
        'content': article.content,
        'meta_description': article.meta_description,
        'category': article.category,
        'featured': bool(article.featured),
        'featured_image': article.featured_image,
        'status': article.status,
        'author_id': article.author_id,
        'reading_time_minutes': reading_time(article.content),
        'published_at': article.published_at.isoformat() if article.published_at else None,
        'created_at': article.created_at.isoformat() if article.created_at else None,
        'updated_at': article.updated_at.isoformat() if article.updated_at else None,
    }


def _published_query():
    return Article.query.filter_by(status='published')


def list_published_articles(category: Optional[str] = None, limit: Optional[int] = None) -> List[Article]:
    query = _published_query()
    if category:
        query = query.filter_by(category=category)
    query = query.order_by(Article.published_at.desc(), Article.created_at.desc())
    if limit:
        query = query.limit(limit)
    return query.all()


def list_articles_for(user_id: str, admin: bool = False) -> List[Article]:
    """Admins see every article; other users see their own plus published ones"""
    query = Article.query
    if not admin:
        query = query.filter(or_(Article.author_id == user_id, Article.status == 'published'))
    return query.order_by(Article.created_at.desc()).all()


def get_featured_articles(limit: int = 3) -> List[Article]:
    return (_published_query()
            .filter_by(featured=True)
            .order_by(Article.published_at.desc())
            .limit(limit)
            .all())


def get_article(slug_or_id: str, published_only: bool = True) -> Article:
    query = _published_query() if published_only else Article.query
    article = query.filter(or_(Article.slug == slug_or_id, Article.id == slug_or_id)).first()
    if article is None:
        raise NotFoundError('Article not found')
    return article


def get_article_archive(page: int = 1, page_size: int = 12, category: Optional[str] = None,
                        search: Optional[str] = None, sort: str = 'newest') -> Dict[str, Any]:
    """
    Paginated published articles

    Returns:
        {'items': [...], 'total': int, 'page': int, 'page_size': int}
    """
    page = max(1, int(page))
    page_size = max(1, min(int(page_size), 100))

    query = _published_query()
    if category:
        query = query.filter_by(category=category)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(Article.title.ilike(pattern), Article.content.ilike(pattern)))

    if sort == 'oldest':
        query = query.order_by(Article.published_at.asc(), Article.created_at.asc())
    else:
        query = query.order_by(Article.published_at.desc(), Article.created_at.desc())

    total = query.count()
    items = query.offset((page - 1) * page_size).limit(page_size).all()

    return {
        'items': [serialize_article(article) for article in items],
        'total': total,
        'page': page,
        'page_size': page_size,
    }


def archive_months() -> List[Dict[str, Any]]:
    """Published article counts grouped by YYYY-MM, newest month first"""
    counts: Dict[str, int] = {}
    for article in _published_query().all():
        stamp = article.published_at or article.created_at
        if stamp is None:
            continue
        month = stamp.strftime('%Y-%m')
        counts[month] = counts.get(month, 0) + 1
    return [{'month': month, 'count': counts[month]} for month in sorted(counts, reverse=True)]


def search_articles(term: str, limit: int = 20) -> List[Article]:
    if not term or not term.strip():
        return []
    pattern = f"%{term.strip()}%"
    return (_published_query()
            .filter(or_(Article.title.ilike(pattern), Article.content.ilike(pattern)))
            .order_by(Article.published_at.desc())
            .limit(limit)
            .all())


def _clean_article_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    fields = {key: data[key] for key in ARTICLE_FIELDS if key in data}
    for key in ARTICLE_TEXT_FIELDS:
        optional_string(fields, key)
    fields = sanitize_form_data(fields, html_fields=('content',))

    if 'status' in fields and fields['status'] not in ARTICLE_STATUSES:
        raise ValidationError(f"Invalid status: {fields['status']}")
    if fields.get('category') and fields['category'] not in ARTICLE_CATEGORIES:
        raise ValidationError(f"Invalid category: {fields['category']}")
    return fields


def create_article(data: Dict[str, Any], author_id: str) -> Article:
    """
    Create an article (draft unless a status is given)

    Raises:
        ValidationError: missing title/content or bad enum value
    """
    fields = _clean_article_fields(data)
    if not fields.get('title'):
        raise ValidationError('Title is required')
    if not fields.get('content'):
        raise ValidationError('Content is required')

    fields['slug'] = _unique_slug(slugify(fields.get('slug') or fields['title']))
    fields.setdefault('status', 'draft')

    article = Article(author_id=author_id, **fields)
    if article.status == 'published':
        article.published_at = datetime.utcnow()

    db.session.add(article)
    db.session.commit()
    logger.info(f"Article created: {article.id} ({article.status})")

    broadcast_change('articles', 'INSERT', serialize_article(article))
    return article


def update_article(article_id: str, data: Dict[str, Any]) -> Article:
    article = db.session.get(Article, article_id)
    if article is None:
        raise NotFoundError('Article not found')

    fields = _clean_article_fields(data)
    if 'slug' in fields:
        fields['slug'] = _unique_slug(slugify(fields['slug']), exclude_id=article.id)

    for key, value in fields.items():
        setattr(article, key, value)

    if fields.get('status') == 'published' and article.published_at is None:
        article.published_at = datetime.utcnow()

    db.session.commit()
    logger.info(f"Article updated: {article.id}")

    broadcast_change('articles', 'UPDATE', serialize_article(article))
    return article


def publish_article(article_id: str) -> Article:
    return update_article(article_id, {'status': 'published'})


def delete_article(article_id: str) -> None:
    article = db.session.get(Article, article_id)
    if article is None:
        raise NotFoundError('Article not found')

    db.session.delete(article)
    db.session.commit()
    logger.info(f"Article deleted: {article_id}")

    broadcast_change('articles', 'DELETE', {'id': article_id})


# Partners

def serialize_partner(partner: Partner) -> Dict[str, Any]:
    return {
        'id': partner.id,
        'name': partner.name,
        'logo_url': partner.logo_url,
        'website_url': partner.website_url,
        'description': partner.description,
        'display_order': partner.display_order,
        'is_active': bool(partner.is_active),
    }


def list_partners(active_only: bool = True) -> List[Partner]:
    query = Partner.query
    if active_only:
        query = query.filter_by(is_active=True)
    return query.order_by(Partner.display_order.asc(), Partner.name.asc()).all()


def _clean_partner_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    fields = {key: data[key] for key in PARTNER_FIELDS if key in data}
    optional_string(fields, 'name')
    return sanitize_form_data(fields, html_fields=('description',))


def create_partner(data: Dict[str, Any]) -> Partner:
    fields = _clean_partner_fields(data)
    if not fields.get('name'):
        raise ValidationError('Partner name is required')

    partner = Partner(**fields)
    db.session.add(partner)
    db.session.commit()

    broadcast_change('partners', 'INSERT', serialize_partner(partner))
    return partner


def update_partner(partner_id: str, data: Dict[str, Any]) -> Partner:
    partner = db.session.get(Partner, partner_id)
    if partner is None:
        raise NotFoundError('Partner not found')

    for key, value in _clean_partner_fields(data).items():
        setattr(partner, key, value)
    db.session.commit()

    broadcast_change('partners', 'UPDATE', serialize_partner(partner))
    return partner


def delete_partner(partner_id: str) -> None:
    partner = db.session.get(Partner, partner_id)
    if partner is None:
        raise NotFoundError('Partner not found')

    db.session.delete(partner)
    db.session.commit()
    broadcast_change('partners', 'DELETE', {'id': partner_id})


# Website content

def get_section_content(section: Optional[str] = None) -> Dict[str, str]:
    """
    Active content as a flat mapping

    With a section the keys are the content keys; without one they are
    prefixed "<section>_<key>".
    """
    query = WebsiteContent.query.filter_by(is_active=True)
    if section:
        query = query.filter_by(section=section)

    content = {}
    for row in query.order_by(WebsiteContent.section.asc()).all():
        key = row.content_key if section else f"{row.section}_{row.content_key}"
        content[key] = row.content_value
    return content


def upsert_content(section: str, content_key: str, value: str, user_id: Optional[str] = None) -> WebsiteContent:
    if not section or not content_key:
        raise ValidationError('Section and content key are required')

    row = WebsiteContent.query.filter_by(section=section, content_key=content_key).first()
    event = 'UPDATE'
    if row is None:
        row = WebsiteContent(section=section, content_key=content_key)
        db.session.add(row)
        event = 'INSERT'

    row.content_value = sanitize_html(value)
    row.updated_by = user_id
    row.is_active = True
    db.session.commit()

    broadcast_change('website_content', event, {
        'id': row.id,
        'section': row.section,
        'content_key': row.content_key,
        'content_value': row.content_value,
    })
    return row
