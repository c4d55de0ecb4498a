# core/validation.py
"""
Declarative payload validation

A schema maps field names to FieldRule objects. validate() walks every
declared field and collects all violations in one pass so a form can show
every problem at once.
"""

import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Pattern, Union

from email_validator import validate_email, EmailNotValidError


class FieldType(Enum):
    """Accepted value types for a field"""
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    LIST = "list"
    MAPPING = "mapping"


@dataclass(frozen=True)
class FieldRule:
    """Validation rules for a single field"""
    required: bool = False
    type: Optional[FieldType] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[Union[str, Pattern]] = None
    validate: Optional[Callable[[Any], Optional[str]]] = None
    # Identifiers such as email addresses are stored exactly as validated
    sanitize: bool = True


ValidationSchema = Mapping[str, FieldRule]


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)


def _is_absent(value: Any) -> bool:
    return value is None or value == ''


def _matches_type(value: Any, expected: FieldType) -> bool:
    if expected is FieldType.STRING:
        return isinstance(value, str)
    if expected is FieldType.BOOLEAN:
        return isinstance(value, bool)
    if expected is FieldType.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if expected is FieldType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected is FieldType.LIST:
        return isinstance(value, (list, tuple))
    if expected is FieldType.MAPPING:
        return isinstance(value, Mapping)
    return True


def validate(payload: Mapping[str, Any], schema: ValidationSchema) -> ValidationResult:
    """
    Validate ``payload`` against ``schema``

    Args:
        payload: Submitted field values
        schema: Field name -> FieldRule

    Returns:
        ValidationResult listing every violation found
    """
    errors = []

    for name, rules in schema.items():
        value = payload.get(name)

        if _is_absent(value):
            if rules.required:
                errors.append(f"{name} is required")
            continue

        if rules.type is not None and not _matches_type(value, rules.type):
            errors.append(f"{name} must be of type {rules.type.value}")
            continue

        if isinstance(value, (str, list, tuple)):
            if rules.min_length is not None and len(value) < rules.min_length:
                errors.append(f"{name} must be at least {rules.min_length} characters long")
            if rules.max_length is not None and len(value) > rules.max_length:
                errors.append(f"{name} must not exceed {rules.max_length} characters")

        if rules.pattern is not None:
            pattern = re.compile(rules.pattern) if isinstance(rules.pattern, str) else rules.pattern
            if not isinstance(value, str) or not pattern.search(value):
                errors.append(f"{name} format is invalid")

        if rules.validate is not None:
            message = rules.validate(value)
            if message:
                errors.append(message)

    return ValidationResult(is_valid=not errors, errors=errors)


# Reusable predicates

def email_address(value: Any) -> Optional[str]:
    """Syntax-only email check (no DNS lookups on the request path)"""
    try:
        validate_email(str(value), check_deliverability=False)
    except EmailNotValidError:
        return 'email format is invalid'
    return None


def uuid_string(value: Any) -> Optional[str]:
    try:
        parsed = uuid.UUID(str(value))
    except ValueError:
        return 'id must be a valid UUID'
    if parsed.version not in (1, 2, 3, 4, 5):
        return 'id must be a valid UUID'
    return None


PHONE_PATTERN = re.compile(r'^\+?[\d\s\-()]{10,}$')


def phone_number(value: Any) -> Optional[str]:
    if not PHONE_PATTERN.match(str(value)):
        return 'phone number format is invalid'
    return None


# Endpoint schemas

# Values that end up in mail headers
SINGLE_LINE = re.compile(r"\A[^\x00-\x1f\x7f]+\Z")

CONTACT_SCHEMA: Dict[str, FieldRule] = {
    'name': FieldRule(required=True, type=FieldType.STRING, min_length=2,
                      max_length=100, pattern=re.compile(r"^[a-zA-Z\s'-]+$")),
    'email': FieldRule(required=True, type=FieldType.STRING, max_length=254,
                       validate=email_address, sanitize=False),
    'subject': FieldRule(required=True, type=FieldType.STRING, min_length=3,
                         max_length=200, pattern=SINGLE_LINE),
    'message': FieldRule(required=True, type=FieldType.STRING, min_length=10,
                         max_length=2000),
}

NEWSLETTER_SCHEMA: Dict[str, FieldRule] = {
    'email': FieldRule(required=True, type=FieldType.STRING, max_length=254,
                       validate=email_address, sanitize=False),
}


# Password and upload checks

PASSWORD_MIN_LENGTH = 8
SPECIAL_CHARACTERS = re.compile(r'[!@#$%^&*(),.?":{}|<>]')


def password_strength(password: str) -> int:
    """Score 0-5 from length, character variety and absence of common patterns"""
    strength = 0
    if len(password) >= 8:
        strength += 1
    if len(password) >= 12:
        strength += 1
    if re.search(r'[A-Z]', password):
        strength += 1
    if re.search(r'[a-z]', password):
        strength += 1
    if re.search(r'\d', password):
        strength += 1
    if SPECIAL_CHARACTERS.search(password):
        strength += 1
    if not re.search(r'(.)\1{2,}', password):
        strength += 1
    if not re.search(r'123|abc|password', password, re.IGNORECASE):
        strength += 1
    return min(strength, 5)


def validate_password_strength(password: str) -> Dict[str, Any]:
    """
    Check a password against the site policy

    Returns:
        Dict with is_valid, errors and a 0-5 strength score
    """
    errors = []

    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if not re.search(r'[A-Z]', password):
        errors.append('Password must contain at least one uppercase letter')
    if not re.search(r'[a-z]', password):
        errors.append('Password must contain at least one lowercase letter')
    if not re.search(r'\d', password):
        errors.append('Password must contain at least one number')
    if not SPECIAL_CHARACTERS.search(password):
        errors.append('Password must contain at least one special character')

    return {
        'is_valid': not errors,
        'errors': errors,
        'strength': password_strength(password)
    }


ALLOWED_UPLOAD_TYPES = ('image/jpeg', 'image/png', 'image/gif', 'application/pdf')
ALLOWED_UPLOAD_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.gif', '.pdf')
MALICIOUS_FILENAME_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r'<script', r'javascript:', r'vbscript:', r'onload=', r'onerror=')
]


def validate_file_upload(filename: str, content_type: str, size: int,
                         max_size: int = 5 * 1024 * 1024,
                         allowed_types=ALLOWED_UPLOAD_TYPES,
                         allowed_extensions=ALLOWED_UPLOAD_EXTENSIONS) -> ValidationResult:
    """Check upload metadata before the file body is read"""
    errors = []

    if size > max_size:
        errors.append(f"File size must not exceed {max_size // (1024 * 1024)}MB")

    if content_type not in allowed_types:
        errors.append(f"File type {content_type} is not allowed")

    lowered = filename.lower()
    extension = lowered[lowered.rfind('.'):] if '.' in lowered else ''
    if extension not in allowed_extensions:
        errors.append(f"File extension {extension or '(none)'} is not allowed")

    if any(p.search(lowered) for p in MALICIOUS_FILENAME_PATTERNS):
        errors.append('File contains potentially malicious content')

    return ValidationResult(is_valid=not errors, errors=errors)
