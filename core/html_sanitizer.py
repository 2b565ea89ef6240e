# core/html_sanitizer.py
"""
Rich-text sanitization gate for article and website content

Strips unsafe markup with bleach and repairs two corruption artifacts seen in
stored content: letter runs produced by bad paste operations ("pppolitical")
and empty block elements left behind by the rich-text editor
("<p></p>", "<h3><br></h3>").

The same sanitize_html() runs before submission and inside
sanitize_form_data(), and applying it twice yields the result of applying it
once.
"""

import re
import logging
from typing import Any, Dict, Iterable, List, Optional
from dataclasses import dataclass, field
from urllib.parse import urlparse

import bleach
from bs4 import BeautifulSoup, NavigableString, Comment
from email_validator import validate_email, EmailNotValidError

from core.errors import ValidationError

# Configure logging
logger = logging.getLogger(__name__)


# Tags the article editor is allowed to produce
ALLOWED_TAGS = [
    'p', 'br', 'strong', 'em', 'b', 'i', 'u',
    'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
    'ul', 'ol', 'li', 'blockquote', 'a', 'div'
]

ALLOWED_ATTRIBUTES = {
    'a': ['href', 'title', 'rel', 'target'],
}

ALLOWED_PROTOCOLS = ['http', 'https', 'mailto']

# Block elements that carry no meaning when empty
EMPTY_BLOCK_TAGS = ['p', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'div']

# Elements whose text must not survive stripping
DROP_WITH_CONTENT = ['script', 'style', 'iframe', 'object', 'embed', 'template']

# Three or more identical consecutive letters (digits and underscores excluded)
REPEATED_LETTERS = re.compile(r'([^\W\d_])\1{2,}', re.IGNORECASE)

# Per-field length limits for plain-text form values
FIELD_LENGTH_LIMITS = {
    'email': 255,
    'message': 2000,
}
DEFAULT_FIELD_LENGTH = 500
EDGE_FIELD_LENGTH = 10000

# Upper bound on repair passes before giving up on a fixed point
MAX_REPAIR_PASSES = 5


@dataclass
class ValidationResult:
    """Outcome of validate_input()"""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    sanitized_data: Optional[Dict[str, Any]] = None


def collapse_repeated_letters(text: str) -> str:
    """
    Collapse every run of 3+ identical letters down to a single letter

    Doubled letters ("Mississippi", "committee") are left alone. The run is
    matched case-insensitively and the first character of the run is kept.
    """
    if not text:
        return text
    return REPEATED_LETTERS.sub(lambda match: match.group(0)[0], text)


class HTMLSanitizer:
    """
    bleach-backed sanitizer with corruption repair
    """

    def __init__(self,
                 tags: Iterable[str] = ALLOWED_TAGS,
                 attributes: Optional[Dict[str, List[str]]] = None,
                 protocols: Iterable[str] = ALLOWED_PROTOCOLS):
        self.html_cleaner = bleach.Cleaner(
            tags=list(tags),
            attributes=attributes if attributes is not None else ALLOWED_ATTRIBUTES,
            protocols=list(protocols),
            strip=True,  # Strip disallowed tags instead of escaping
            strip_comments=True
        )

    def sanitize(self, content: Optional[str]) -> str:
        """
        Sanitize rich-text HTML

        bleach serializes through html5lib, which can restructure malformed
        markup (an unclosed link inside a heading nests the next heading).
        The repair pass is repeated until its output no longer changes.

        Args:
            content: Raw HTML from the editor or an API payload

        Returns:
            Clean HTML with no letter runs of 3+ and no empty blocks
        """
        if not content:
            return ''

        soup = BeautifulSoup(content, 'html.parser')
        for element in soup.find_all(DROP_WITH_CONTENT):
            element.decompose()

        result = self._repair(str(soup))
        for _ in range(MAX_REPAIR_PASSES):
            repaired = self._repair(result)
            if repaired == result:
                return result
            result = repaired

        logger.warning(f"Sanitizer did not settle after {MAX_REPAIR_PASSES} passes")
        return result

    def _repair(self, markup: str) -> str:
        """One clean / empty-block / letter-run pass"""
        soup = BeautifulSoup(self.html_cleaner.clean(markup), 'html.parser')

        removed = self._remove_empty_blocks(soup)
        # Removing a block can leave two text nodes side by side
        soup.smooth()
        collapsed = self._collapse_text_nodes(soup)

        if removed or collapsed:
            logger.debug(f"Content repaired: {removed} empty blocks removed, "
                         f"{collapsed} text nodes de-duplicated")

        return str(soup).strip()

    def _remove_empty_blocks(self, soup: BeautifulSoup) -> int:
        """Remove empty blocks until none remain (parents can become empty)"""
        removed = 0
        while True:
            empties = [tag for tag in soup.find_all(EMPTY_BLOCK_TAGS) if self._is_empty_block(tag)]
            if not empties:
                return removed
            for tag in empties:
                if tag.parent is not None:
                    tag.decompose()
                    removed += 1

    @staticmethod
    def _is_empty_block(tag) -> bool:
        for child in tag.children:
            if isinstance(child, NavigableString):
                if isinstance(child, Comment):
                    continue
                if child.strip():
                    return False
            elif child.name != 'br':
                return False
        return True

    @staticmethod
    def _collapse_text_nodes(soup: BeautifulSoup) -> int:
        changed = 0
        for text_node in soup.find_all(string=True):
            if isinstance(text_node, Comment):
                continue
            repaired = collapse_repeated_letters(str(text_node))
            if repaired != str(text_node):
                text_node.replace_with(repaired)
                changed += 1
        return changed


_default_sanitizer = HTMLSanitizer()


def sanitize_html(content: Optional[str]) -> str:
    """Sanitize rich-text HTML with the default allow-list"""
    return _default_sanitizer.sanitize(content)


def sanitize_text(text: Optional[str]) -> str:
    """Strip all markup and surrounding whitespace"""
    if not text:
        return ''
    return bleach.clean(text, tags=[], strip=True).strip()


def _sanitize_plain_value(key: str, value: str) -> str:
    sanitized = re.sub(r'[<>]', '', value)
    sanitized = re.sub(r'[\'"]', '', sanitized)
    sanitized = re.sub(r'javascript:', '', sanitized, flags=re.IGNORECASE)
    sanitized = re.sub(r'on\w+=', '', sanitized, flags=re.IGNORECASE)
    sanitized = sanitized.strip()

    limit = FIELD_LENGTH_LIMITS.get(key, DEFAULT_FIELD_LENGTH)
    return sanitized[:limit]


def sanitize_form_data(data: Dict[str, Any], html_fields: Iterable[str] = ('content',)) -> Dict[str, Any]:
    """
    Normalize a submitted form

    HTML fields go through sanitize_html() so they converge with the
    client-side result; other string fields are stripped of injection
    characters and length-limited. Non-string values pass through.
    """
    html_fields = set(html_fields)
    sanitized = {}

    for key, value in data.items():
        if not isinstance(value, str):
            sanitized[key] = value
        elif key in html_fields:
            sanitized[key] = sanitize_html(value)
        else:
            sanitized[key] = _sanitize_plain_value(key, value)

    return sanitized


def validate_input(data: Dict[str, Any], required_fields: Iterable[str]) -> ValidationResult:
    """
    Validate and sanitize a function payload

    Args:
        data: Decoded JSON body
        required_fields: Keys that must be present and truthy

    Returns:
        ValidationResult; sanitized_data is only set when valid
    """
    errors = []
    sanitized_data = {}

    for required in required_fields:
        if not data.get(required):
            errors.append(f'Missing required field: {required}')

    for key, value in data.items():
        if not isinstance(value, str):
            sanitized_data[key] = value
            continue

        sanitized = re.sub(r'[<>\'"]', '', value)
        sanitized = re.sub(r'javascript:', '', sanitized, flags=re.IGNORECASE)
        sanitized = re.sub(r'data:', '', sanitized, flags=re.IGNORECASE)
        sanitized = sanitized.strip()[:EDGE_FIELD_LENGTH]
        sanitized_data[key] = sanitized

        if key == 'email' and sanitized:
            try:
                validate_email(sanitized, check_deliverability=False)
            except EmailNotValidError:
                errors.append('Invalid email format')

        if key == 'url' and sanitized:
            parsed = urlparse(sanitized)
            if not parsed.scheme or not parsed.netloc:
                errors.append('Invalid URL format')
            elif parsed.scheme not in ('http', 'https'):
                errors.append('Invalid URL protocol')

    return ValidationResult(
        is_valid=not errors,
        errors=errors,
        sanitized_data=sanitized_data if not errors else None
    )


def optional_string(data: Dict[str, Any], key: str) -> Optional[str]:
    """
    Read an optional text field from a decoded JSON body

    Raises:
        ValidationError: the field is present but not a string
    """
    value = data.get(key)
    if value is None or isinstance(value, str):
        return value
    raise ValidationError(f'{key} must be a string')


def optional_object(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    """Read an optional nested JSON object; missing or null gives {}"""
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f'{key} must be an object')
    return value
