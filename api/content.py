# api/content.py
"""
Content API: articles, partners, website sections and media uploads
"""

from flask import Blueprint, current_app, request, jsonify, g, send_file
import logging

from core.errors import ValidationError
from core.html_sanitizer import optional_string
from middleware.security import json_body, require_admin, require_auth, require_csrf
from services import content as content_service
from services.auth import is_admin
from services.storage import ObjectStorage

content_bp = Blueprint('content', __name__)
logger = logging.getLogger(__name__)


def _storage() -> ObjectStorage:
    return ObjectStorage(current_app.config['STORAGE_ROOT'], current_app.config['STORAGE_PUBLIC_URL'])


# Articles

@content_bp.route('/api/articles', methods=['GET'])
def list_articles():
    category = request.args.get('category')
    limit = request.args.get('limit', type=int)
    articles = content_service.list_published_articles(category=category, limit=limit)
    return jsonify({'articles': [content_service.serialize_article(a) for a in articles]})


@content_bp.route('/api/articles/featured', methods=['GET'])
def featured_articles():
    limit = request.args.get('limit', 3, type=int)
    articles = content_service.get_featured_articles(limit)
    return jsonify({'articles': [content_service.serialize_article(a) for a in articles]})


@content_bp.route('/api/articles/archive', methods=['GET'])
def article_archive():
    archive = content_service.get_article_archive(
        page=request.args.get('page', 1, type=int),
        page_size=request.args.get('page_size', 12, type=int),
        category=request.args.get('category'),
        search=request.args.get('search'),
        sort=request.args.get('sort', 'newest'),
    )
    archive['months'] = content_service.archive_months()
    return jsonify(archive)


@content_bp.route('/api/articles/search', methods=['GET'])
def search_articles():
    articles = content_service.search_articles(request.args.get('q', ''))
    return jsonify({'articles': [content_service.serialize_article(a) for a in articles]})


@content_bp.route('/api/articles/mine', methods=['GET'])
@require_auth
def my_articles():
    articles = content_service.list_articles_for(g.user.id, admin=is_admin(g.user.id))
    return jsonify({'articles': [content_service.serialize_article(a) for a in articles]})


@content_bp.route('/api/articles/<slug_or_id>', methods=['GET'])
def get_article(slug_or_id):
    article = content_service.get_article(slug_or_id)
    return jsonify(content_service.serialize_article(article))


@content_bp.route('/api/articles', methods=['POST'])
@require_admin
@require_csrf
def create_article():
    data = json_body()
    article = content_service.create_article(data, author_id=g.user.id)
    return jsonify(content_service.serialize_article(article)), 201


@content_bp.route('/api/articles/<article_id>', methods=['PUT', 'PATCH'])
@require_admin
@require_csrf
def update_article(article_id):
    data = json_body()
    article = content_service.update_article(article_id, data)
    return jsonify(content_service.serialize_article(article))


@content_bp.route('/api/articles/<article_id>/publish', methods=['POST'])
@require_admin
@require_csrf
def publish_article(article_id):
    article = content_service.publish_article(article_id)
    return jsonify(content_service.serialize_article(article))


@content_bp.route('/api/articles/<article_id>', methods=['DELETE'])
@require_admin
@require_csrf
def delete_article(article_id):
    content_service.delete_article(article_id)
    return jsonify({'success': True})


# Partners

@content_bp.route('/api/partners', methods=['GET'])
def list_partners():
    partners = content_service.list_partners(active_only=True)
    return jsonify({'partners': [content_service.serialize_partner(p) for p in partners]})


@content_bp.route('/api/partners', methods=['POST'])
@require_admin
@require_csrf
def create_partner():
    partner = content_service.create_partner(json_body())
    return jsonify(content_service.serialize_partner(partner)), 201


@content_bp.route('/api/partners/<partner_id>', methods=['PUT', 'PATCH'])
@require_admin
@require_csrf
def update_partner(partner_id):
    partner = content_service.update_partner(partner_id, json_body())
    return jsonify(content_service.serialize_partner(partner))


@content_bp.route('/api/partners/<partner_id>', methods=['DELETE'])
@require_admin
@require_csrf
def delete_partner(partner_id):
    content_service.delete_partner(partner_id)
    return jsonify({'success': True})


# Website content

@content_bp.route('/api/content', methods=['GET'])
@content_bp.route('/api/content/<section>', methods=['GET'])
def get_content(section=None):
    return jsonify({'content': content_service.get_section_content(section)})


@content_bp.route('/api/content/<section>/<content_key>', methods=['PUT'])
@require_admin
@require_csrf
def put_content(section, content_key):
    data = json_body()
    if 'value' not in data:
        raise ValidationError('value is required')
    row = content_service.upsert_content(section, content_key, optional_string(data, 'value') or '',
                                         user_id=g.user.id)
    return jsonify({
        'section': row.section,
        'content_key': row.content_key,
        'content_value': row.content_value,
    })


# Media

@content_bp.route('/api/storage/<bucket>', methods=['POST'])
@require_admin
@require_csrf
def upload_media(bucket):
    upload = request.files.get('file')
    if upload is None:
        raise ValidationError('No file uploaded')

    storage = _storage()
    path = request.form.get('path') or upload.filename
    stored = storage.upload(bucket, path, upload.read(), upload.mimetype,
                            upsert=request.form.get('upsert') == 'true')
    return jsonify({'path': stored, 'publicUrl': storage.get_public_url(bucket, stored)}), 201


@content_bp.route('/storage/v1/object/public/<bucket>/<path:object_path>', methods=['GET'])
def serve_media(bucket, object_path):
    return send_file(_storage().open(bucket, object_path))
