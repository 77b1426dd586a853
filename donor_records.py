"""
donor_records.py
Donor record type, record drafts, search filters and the store base class
shared by the local (app.py) and DynamoDB (app_aws.py) intake apps.
"""

from collections import namedtuple
from datetime import date, datetime
import hashlib
import re
import uuid

DONOR_RECORD_TYPE = 'blood_donor'

# ============== CODED OPTIONS ==============

GENDER_OPTIONS = [
    (1, 'Male'),
    (2, 'Female'),
    (3, 'Custom'),
]

BLOOD_GROUP_OPTIONS = [
    (1, 'A+'),
    (2, 'A-'),
    (3, 'B+'),
    (4, 'B-'),
    (5, 'AB+'),
    (6, 'AB-'),
    (7, 'O+'),
    (8, 'O-'),
]

# Phone: optional leading +, digits and common separators, 7+ digits
PHONE_PATTERN = re.compile(r'^\+?[0-9 ()\-.]{7,32}$')
MIN_PHONE_DIGITS = 7

# The six fields a duplicate is judged on
KEY_FIELDS = ('first_name', 'last_name', 'gender', 'phone', 'blood_group', 'last_donation')

# ============== ERRORS ==============


class InvalidFieldValue(ValueError):
    """Raised when a value cannot be assigned to a record field"""

    def __init__(self, field_id, value, reason):
        super().__init__(f"{field_id}: {reason} ({value!r})")
        self.field_id = field_id
        self.value = value
        self.reason = reason


class MissingMandatoryField(ValueError):
    """Raised on save when a required field was never set"""

    def __init__(self, field_ids):
        super().__init__('Missing mandatory field(s): ' + ', '.join(field_ids))
        self.field_ids = list(field_ids)


class DuplicateRecord(Exception):
    """Raised by a store when the uniqueness guard rejects an insert"""


class StoreError(Exception):
    """Raised when the backing store cannot be read or written"""


# ============== FIELD COERCION ==============

def generate_id(prefix='DON'):
    return f"{prefix}-{uuid.uuid4().hex[:8].upper()}"


def _coerce_text(field_id, value):
    if value is None:
        return ''
    if not isinstance(value, str):
        raise InvalidFieldValue(field_id, value, 'expected text')
    return value


def _coerce_phone(field_id, value):
    value = _coerce_text(field_id, value)
    if not PHONE_PATTERN.match(value):
        raise InvalidFieldValue(field_id, value, 'not a phone number')
    if sum(ch.isdigit() for ch in value) < MIN_PHONE_DIGITS:
        raise InvalidFieldValue(field_id, value, 'too few digits')
    return value


def _option_coercer(options):
    codes = {code for code, _ in options}

    def coerce(field_id, value):
        try:
            code = int(value)
        except (TypeError, ValueError):
            raise InvalidFieldValue(field_id, value, 'not an option code')
        if code not in codes:
            raise InvalidFieldValue(field_id, value, f'code must be one of {sorted(codes)}')
        return code

    return coerce


def _coerce_date(field_id, value):
    # datetime is a date subclass; keep only the calendar day
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raise InvalidFieldValue(field_id, value, 'expected a date')


RecordField = namedtuple('RecordField', ['field_id', 'label', 'mandatory', 'coerce'])

DONOR_FIELDS = [
    RecordField('first_name', 'First Name', True, _coerce_text),
    RecordField('last_name', 'Last Name', False, _coerce_text),
    RecordField('gender', 'Gender', True, _option_coercer(GENDER_OPTIONS)),
    RecordField('phone', 'Phone Number', True, _coerce_phone),
    RecordField('blood_group', 'Blood Group', True, _option_coercer(BLOOD_GROUP_OPTIONS)),
    RecordField('last_donation', 'Last Donation Date', True, _coerce_date),
]

RECORD_TYPES = {
    DONOR_RECORD_TYPE: {field.field_id: field for field in DONOR_FIELDS},
}


def record_fields(record_type):
    try:
        return RECORD_TYPES[record_type]
    except KeyError:
        raise ValueError(f'Unknown record type: {record_type}')


def dedupe_key(values):
    """Stable hash of the duplicate-check fields of a record"""
    parts = []
    for field_id in KEY_FIELDS:
        value = values.get(field_id)
        if isinstance(value, date):
            value = value.isoformat()
        parts.append('' if value is None else str(value))
    return hashlib.sha1('\x1f'.join(parts).encode('utf-8')).hexdigest()


# ============== SEARCH FILTERS ==============

SearchFilter = namedtuple('SearchFilter', ['field', 'operator', 'value'])

OPERATORS = ('anyof', 'is', 'on')


def _as_day(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def _as_code(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


def filter_matches(item, search_filter):
    """Evaluate a single filter against a stored item (a plain dict)"""
    field, operator, expected = search_filter
    actual = item.get(field)
    if operator == 'anyof':
        if not isinstance(expected, (list, tuple, set)):
            expected = [expected]
        return _as_code(actual) in {_as_code(v) for v in expected}
    if operator == 'is':
        return actual is not None and str(actual) == str(expected)
    if operator == 'on':
        day = _as_day(expected)
        return day is not None and _as_day(actual) == day
    raise ValueError(f'Unsupported search operator: {operator}')


def matches_all(item, filters):
    return all(filter_matches(item, f) for f in filters)


def validate_filters(filters):
    for f in filters:
        if f.operator not in OPERATORS:
            raise ValueError(f'Unsupported search operator: {f.operator}')


# ============== RECORDS ==============


def _is_blank(value):
    return value is None or (isinstance(value, str) and not value.strip())


class RecordDraft:
    """A record being built field by field before it is saved to a store"""

    def __init__(self, store, record_type):
        self.store = store
        self.record_type = record_type
        self.fields = record_fields(record_type)
        self.values = {}

    def set_value(self, field_id, value):
        field = self.fields.get(field_id)
        if field is None:
            raise InvalidFieldValue(field_id, value, 'unknown field')
        self.values[field_id] = field.coerce(field_id, value)

    def get_value(self, field_id):
        return self.values.get(field_id)

    def save(self, enable_sourcing=True, ignore_mandatory_fields=False):
        """Validate mandatory fields and hand the values to the store; returns the new id"""
        values = dict(self.values)
        if enable_sourcing:
            for field_id, field in self.fields.items():
                if not field.mandatory and field_id not in values:
                    values[field_id] = field.coerce(field_id, None)
            values['registered_at'] = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        # stores guard inserts on this key, sourcing or not
        values['dedupe_key'] = dedupe_key(values)

        if not ignore_mandatory_fields:
            missing = [
                field_id for field_id, field in self.fields.items()
                if field.mandatory and _is_blank(values.get(field_id))
            ]
            if missing:
                raise MissingMandatoryField(missing)

        return self.store.insert(self.record_type, values)


class DonorStore:
    """Base class for record stores; backends implement insert() and _scan()"""

    id_field = 'donor_id'

    def create(self, record_type):
        return RecordDraft(self, record_type)

    def insert(self, record_type, values):
        raise NotImplementedError

    def search(self, record_type, filters, columns=('donor_id',)):
        record_fields(record_type)
        validate_filters(filters)
        return [
            {column: item.get(column) for column in columns}
            for item in self._scan(record_type, filters)
        ]

    def _scan(self, record_type, filters):
        raise NotImplementedError


def serialize_values(values):
    """Record values as stored: dates become ISO strings"""
    return {
        key: value.isoformat() if isinstance(value, date) else value
        for key, value in values.items()
    }
