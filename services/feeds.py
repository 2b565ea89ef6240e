# services/feeds.py
"""
Sitemap (sitemaps.org 0.9) and RSS 2.0 rendering

N published articles and M static pages always yield N+M sitemap <url>
entries; the RSS feed has one <item> per article up to the item limit.
"""

import html
import logging
import re
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Any, Dict, List, Optional

from jinja2 import Environment, StrictUndefined, select_autoescape
from markupsafe import Markup

from core.database_models import Article

logger = logging.getLogger(__name__)


SITEMAP_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
{%- for entry in entries %}
  <url>
    <loc>{{ entry.loc }}</loc>
    <changefreq>{{ entry.changefreq }}</changefreq>
    <priority>{{ entry.priority }}</priority>
    <lastmod>{{ entry.lastmod }}</lastmod>
  </url>
{%- endfor %}
</urlset>
"""

RSS_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:atom="http://www.w3.org/2005/Atom" xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>{{ channel.title }}</title>
    <link>{{ channel.base_url }}/articles</link>
    <description>{{ channel.description }}</description>
    <language>en-us</language>
    <lastBuildDate>{{ channel.last_build_date }}</lastBuildDate>
    <pubDate>{{ channel.pub_date }}</pubDate>
    <ttl>360</ttl>
    <managingEditor>{{ channel.author }}</managingEditor>
    <webMaster>{{ channel.author }}</webMaster>
    <image>
      <url>{{ channel.base_url }}/images/polrydian-logo.png</url>
      <title>{{ channel.title }}</title>
      <link>{{ channel.base_url }}</link>
    </image>
    <atom:link href="{{ channel.base_url }}/rss.xml" rel="self" type="application/rss+xml" />
{%- for item in items %}
    <item>
      <title>{{ item.title | cdata }}</title>
      <link>{{ item.url }}</link>
      <guid isPermaLink="true">{{ item.url }}</guid>
      <description>{{ item.description | cdata }}</description>
      <content:encoded>{{ item.content | cdata }}</content:encoded>
      <pubDate>{{ item.pub_date }}</pubDate>
      <category>{{ item.category | cdata }}</category>
      <author>{{ channel.author }}</author>
      {%- if item.image %}
      <enclosure url="{{ item.image }}" type="image/jpeg" />
      {%- endif %}
    </item>
{%- endfor %}
  </channel>
</rss>
"""

TAG_PATTERN = re.compile(r'<[^>]*>')
DESCRIPTION_LENGTH = 500


def cdata(value: Optional[str]) -> Markup:
    """Wrap text in a CDATA section, splitting any embedded terminator"""
    text = (value or '').replace(']]>', ']]]]><![CDATA[>')
    return Markup(f"<![CDATA[{text}]]>")


_env = Environment(
    autoescape=select_autoescape(default_for_string=True, default=True),
    undefined=StrictUndefined,
)
_env.filters['cdata'] = cdata
_sitemap_template = _env.from_string(SITEMAP_TEMPLATE)
_rss_template = _env.from_string(RSS_TEMPLATE)


def iso_date(value: Optional[datetime]) -> str:
    return (value or datetime.utcnow()).strftime('%Y-%m-%d')


def rfc822_date(value: Optional[datetime]) -> str:
    value = value or datetime.utcnow()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def plain_description(content: Optional[str]) -> str:
    """Tag-stripped, entity-decoded text capped at 500 characters"""
    text = html.unescape(TAG_PATTERN.sub('', content or ''))
    return text[:DESCRIPTION_LENGTH]


def article_path(article: Article) -> str:
    return f"/articles/{article.slug or article.id}"


def _published_articles(limit: Optional[int] = None) -> List[Article]:
    query = (Article.query
             .filter_by(status='published')
             .order_by(Article.published_at.desc(), Article.created_at.desc()))
    if limit:
        query = query.limit(limit)
    return query.all()


def build_sitemap_entries(articles: List[Article], static_pages: List[Dict[str, str]],
                          base_url: str, today: Optional[datetime] = None) -> List[Dict[str, Any]]:
    today_str = iso_date(today)
    entries = [{
        'loc': f"{base_url}{page['loc']}",
        'changefreq': page['changefreq'],
        'priority': page['priority'],
        'lastmod': today_str,
    } for page in static_pages]

    for article in articles:
        entries.append({
            'loc': f"{base_url}{article_path(article)}",
            'changefreq': 'monthly',
            'priority': '0.7',
            'lastmod': iso_date(article.updated_at) if article.updated_at else today_str,
        })
    return entries


def render_sitemap(config: Dict[str, Any], articles: Optional[List[Article]] = None) -> str:
    """
    Render the sitemap for every published article plus the static pages

    Args:
        config: Application config (SITE_BASE_URL, STATIC_PAGES)
        articles: Pre-loaded articles; loaded from the database when omitted
    """
    if articles is None:
        articles = _published_articles()
    entries = build_sitemap_entries(articles, config['STATIC_PAGES'], config['SITE_BASE_URL'])
    logger.info(f"Sitemap rendered with {len(entries)} entries")
    return _sitemap_template.render(entries=entries)


def render_rss(config: Dict[str, Any], articles: Optional[List[Article]] = None) -> str:
    """Render the RSS 2.0 feed of the latest published articles"""
    if articles is None:
        articles = _published_articles(config.get('FEED_ITEM_LIMIT', 20))

    base_url = config['SITE_BASE_URL']
    now = rfc822_date(None)
    if articles:
        last_build = rfc822_date(articles[0].published_at or articles[0].updated_at)
    else:
        last_build = now

    items = [{
        'title': article.title,
        'url': f"{base_url}{article_path(article)}",
        'description': article.meta_description or plain_description(article.content),
        'content': article.content,
        'pub_date': rfc822_date(article.published_at or article.updated_at),
        'category': article.category or 'Strategy',
        'image': article.featured_image,
    } for article in articles]

    channel = {
        'title': config['FEED_TITLE'],
        'description': config['FEED_DESCRIPTION'],
        'author': config['FEED_AUTHOR'],
        'base_url': base_url,
        'last_build_date': last_build,
        'pub_date': now,
    }
    return _rss_template.render(channel=channel, items=items)
