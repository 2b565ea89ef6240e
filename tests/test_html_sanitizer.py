import pytest

from core.html_sanitizer import (
    collapse_repeated_letters, sanitize_form_data, sanitize_html, sanitize_text, validate_input
)


def test_collapses_letter_runs():
    assert sanitize_html('<p>pppolitical analysis</p>') == '<p>political analysis</p>'


def test_keeps_doubled_letters():
    assert collapse_repeated_letters('Mississippi committee') == 'Mississippi committee'


def test_letter_run_collapse_is_case_insensitive():
    assert collapse_repeated_letters('AAaa strategy') == 'A strategy'


def test_digits_are_not_collapsed():
    assert collapse_repeated_letters('Q1 2000') == 'Q1 2000'


def test_removes_empty_paragraphs():
    assert sanitize_html('<p></p><p>Corridor economics</p>') == '<p>Corridor economics</p>'


def test_removes_heading_holding_only_a_break():
    assert sanitize_html('<h3><br></h3>') == ''


def test_removes_nested_empty_blocks():
    assert sanitize_html('<div><p> </p></div><p>Kept</p>') == '<p>Kept</p>'


def test_strips_scripts_with_their_content():
    cleaned = sanitize_html('<p>Hello</p><script>alert(1)</script>')
    assert cleaned == '<p>Hello</p>'
    assert 'alert' not in cleaned


def test_strips_event_handlers_and_javascript_links():
    cleaned = sanitize_html('<p onclick="steal()">x</p><a href="javascript:alert(1)">link</a>')
    assert 'onclick' not in cleaned
    assert 'javascript' not in cleaned
    assert 'link' in cleaned


def test_keeps_allowed_links():
    cleaned = sanitize_html('<a href="https://polrydian.com" title="Home">Home</a>')
    assert 'href="https://polrydian.com"' in cleaned


def test_sanitize_is_idempotent():
    raw = '<p>Thhhe <strong>strategic</strong> outlook</p><p></p><h2><br></h2><ul><li>one</li></ul>'
    once = sanitize_html(raw)
    assert sanitize_html(once) == once


@pytest.mark.parametrize('raw', [
    '<h2><a href="https://x.com">A<h2><a href="https://x.com">B',
    '<p><a href="https://x.com">Open link<p>Next paragraph',
    '<div><p>Outer<div><p>Inner</div>',
    '<h3>Title<p>Body</h3><ul><li>one<li>two',
    '<blockquote><p>Quote<h4>Heading</blockquote>tail',
    '<p><strong>Bold <em>both</strong> italic</em></p>',
    '<li>orphan item</li><p></p>',
])
def test_malformed_markup_settles_in_one_call(raw):
    once = sanitize_html(raw)
    assert sanitize_html(once) == once


def test_empty_input():
    assert sanitize_html(None) == ''
    assert sanitize_html('') == ''


def test_sanitize_text_strips_markup():
    assert sanitize_text('  <b>bold</b> move ') == 'bold move'


def test_form_data_sanitizes_html_and_plain_fields():
    data = sanitize_form_data({
        'title': '<b>"Title"</b>',
        'content': '<p>Body</p><p></p>',
        'featured': True,
    })
    assert data['title'] == 'bTitle/b'
    assert data['content'] == '<p>Body</p>'
    assert data['featured'] is True


def test_form_data_matches_direct_sanitize():
    content = '<p>Sssupply chains</p><p></p>'
    assert sanitize_form_data({'content': content})['content'] == sanitize_html(content)


def test_form_data_limits_field_length():
    data = sanitize_form_data({'email': 'a' * 400, 'message': 'b' * 3000, 'other': 'c' * 600})
    assert len(data['email']) == 255
    assert len(data['message']) == 2000
    assert len(data['other']) == 500


def test_validate_input_reports_missing_fields():
    result = validate_input({'name': 'x'}, required_fields=('name', 'origin'))
    assert not result.is_valid
    assert result.errors == ['Missing required field: origin']


def test_validate_input_sanitizes():
    result = validate_input({'origin': ' <https://calendly.com> '}, required_fields=('origin',))
    assert result.is_valid
    assert result.sanitized_data['origin'] == 'https://calendly.com'
