"""Tests for schema validation and the reusable checks."""

import re
import uuid

import pytest

from core.validation import (
    CONTACT_SCHEMA,
    NEWSLETTER_SCHEMA,
    FieldRule,
    FieldType,
    email_address,
    phone_number,
    uuid_string,
    validate,
    validate_file_upload,
    validate_password_strength,
)


class TestValidate:
    """Rule evaluation and error accumulation."""

    def test_empty_payload_names_required_field(self):
        result = validate({}, NEWSLETTER_SCHEMA)

        assert result.is_valid is False
        assert result.errors == ['email is required']

    def test_errors_accumulate_across_fields(self):
        result = validate({}, CONTACT_SCHEMA)

        assert result.errors == [
            'name is required',
            'email is required',
            'subject is required',
            'message is required',
        ]

    def test_empty_string_counts_as_absent(self):
        result = validate({'email': ''}, NEWSLETTER_SCHEMA)

        assert result.errors == ['email is required']

    def test_optional_field_may_be_absent(self):
        schema = {'nickname': FieldRule(type=FieldType.STRING, min_length=3)}

        assert validate({}, schema).is_valid is True

    def test_type_mismatch_stops_further_checks_for_that_field(self):
        schema = {'age': FieldRule(type=FieldType.INTEGER, validate=lambda v: 'never called')}

        result = validate({'age': '42'}, schema)

        assert result.errors == ['age must be of type integer']

    def test_bool_is_not_a_number(self):
        schema = {'count': FieldRule(type=FieldType.NUMBER)}

        assert validate({'count': True}, schema).errors == ['count must be of type number']
        assert validate({'count': 2.5}, schema).is_valid is True

    def test_length_bounds(self):
        schema = {'code': FieldRule(min_length=3, max_length=5)}

        assert validate({'code': 'ab'}, schema).errors == ['code must be at least 3 characters long']
        assert validate({'code': 'abcdef'}, schema).errors == ['code must not exceed 5 characters']
        assert validate({'code': 'abcd'}, schema).is_valid is True

    def test_pattern_accepts_string_or_compiled(self):
        for pattern in (r'^\d+$', re.compile(r'^\d+$')):
            schema = {'zip': FieldRule(pattern=pattern)}
            assert validate({'zip': '12a'}, schema).errors == ['zip format is invalid']
            assert validate({'zip': '123'}, schema).is_valid is True

    def test_custom_message_is_appended_verbatim(self):
        schema = {'color': FieldRule(validate=lambda v: None if v == 'green' else 'pick green')}

        assert validate({'color': 'red'}, schema).errors == ['pick green']

    def test_contact_schema_rejects_digits_in_name(self, contact_payload):
        result = validate(dict(contact_payload, name='R2D2'), CONTACT_SCHEMA)

        assert result.errors == ['name format is invalid']

    def test_contact_schema_accepts_valid_payload(self, contact_payload):
        assert validate(contact_payload, CONTACT_SCHEMA).is_valid is True

    @pytest.mark.parametrize('subject', [
        'Hi\nBcc: victim@remedies-shop.org',
        'Hi\r\nX-Injected: 1',
        'Question about teas\n',
        'Tab\there',
    ])
    def test_contact_subject_must_be_one_line(self, contact_payload, subject):
        result = validate(dict(contact_payload, subject=subject), CONTACT_SCHEMA)

        assert result.errors == ['subject format is invalid']

    def test_email_fields_opt_out_of_sanitizing(self):
        assert CONTACT_SCHEMA['email'].sanitize is False
        assert NEWSLETTER_SCHEMA['email'].sanitize is False
        assert CONTACT_SCHEMA['message'].sanitize is True

    def test_newsletter_rejects_malformed_email(self):
        result = validate({'email': 'not-an-email'}, NEWSLETTER_SCHEMA)

        assert result.is_valid is False
        assert result.errors == ['email format is invalid']


class TestPredicates:

    def test_email_address(self):
        assert email_address('someone@remedies-shop.org') is None
        assert email_address('someone@') == 'email format is invalid'

    def test_uuid_string(self):
        assert uuid_string(str(uuid.uuid4())) is None
        assert uuid_string('not-a-uuid') == 'id must be a valid UUID'

    def test_phone_number(self):
        assert phone_number('+1 (555) 010-2030') is None
        assert phone_number('12345') == 'phone number format is invalid'


class TestPasswordStrength:

    def test_strong_password(self):
        result = validate_password_strength('Herbal!Tea2024x')

        assert result['is_valid'] is True
        assert result['errors'] == []
        assert result['strength'] == 5

    def test_weak_password_lists_every_problem(self):
        result = validate_password_strength('abc')

        assert result['is_valid'] is False
        assert len(result['errors']) == 4
        assert result['strength'] < 3


class TestFileUpload:

    def test_accepts_small_pdf(self):
        assert validate_file_upload('label.pdf', 'application/pdf', 1024).is_valid is True

    def test_rejects_large_executable(self):
        result = validate_file_upload('setup.exe', 'application/x-msdownload', 6 * 1024 * 1024)

        assert result.errors == [
            'File size must not exceed 5MB',
            'File type application/x-msdownload is not allowed',
            'File extension .exe is not allowed',
        ]

    def test_rejects_script_in_filename(self):
        result = validate_file_upload('<script>x.png', 'image/png', 10)

        assert result.errors == ['File contains potentially malicious content']
