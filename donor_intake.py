"""
donor_intake.py
Blood donor intake handler shared by the local and DynamoDB apps.

GET renders the registration form; POST validates the donation date, runs the
duplicate search and creates the donor record. Store, renderer and logger are
passed in so each app (and the tests) can supply its own.
"""

from collections import namedtuple
from datetime import date, datetime
import logging

from flask import render_template

from donor_records import (
    BLOOD_GROUP_OPTIONS,
    DONOR_RECORD_TYPE,
    GENDER_OPTIONS,
    DuplicateRecord,
    InvalidFieldValue,
    SearchFilter,
)

FORM_TITLE = 'Blood Requirement Registration Form'
SUBMIT_LABEL = 'Submit'
DEFAULT_DATE_FORMAT = '%Y-%m-%d'

# ============== FORM DESCRIPTOR ==============

FormField = namedtuple('FormField', ['id', 'type', 'label', 'mandatory', 'options', 'record_field'])

FIELD_TEXT = 'text'
FIELD_SELECT = 'select'
FIELD_PHONE = 'phone'
FIELD_DATE = 'date'

# Submitted parameter name -> record field id
FORM_FIELDS = [
    FormField('custpage_first_name', FIELD_TEXT, 'First Name', True, None, 'first_name'),
    FormField('custpage_last_name', FIELD_TEXT, 'Last Name', False, None, 'last_name'),
    FormField('custpage_gender', FIELD_SELECT, 'Gender', False, GENDER_OPTIONS, 'gender'),
    FormField('custpage_phone', FIELD_PHONE, 'Phone Number', True, None, 'phone'),
    FormField('custpage_blood_group', FIELD_SELECT, 'Blood Group', False, BLOOD_GROUP_OPTIONS, 'blood_group'),
    FormField('custpage_last_donation', FIELD_DATE, 'Last Donation Date', True, None, 'last_donation'),
]

DATE_PARAM = 'custpage_last_donation'


class DonorForm:
    """Everything a renderer needs to draw the intake form"""

    def __init__(self, title, fields, submit_label, client_script=None, max_date=None):
        self.title = title
        self.fields = fields
        self.submit_label = submit_label
        self.client_script = client_script
        self.max_date = max_date


def build_donor_form(client_script=None, today=None):
    return DonorForm(
        title=FORM_TITLE,
        fields=list(FORM_FIELDS),
        submit_label=SUBMIT_LABEL,
        client_script=client_script,
        max_date=today,
    )


def parse_donation_date(value, date_format=DEFAULT_DATE_FORMAT):
    """Parse the submitted last donation date; raises ValueError on bad input"""
    if not value:
        raise ValueError('Last donation date is required')
    return datetime.strptime(value.strip(), date_format).date()


# ============== RESULTS ==============

CREATED = 'created'
FUTURE_DATE = 'future_date'
DUPLICATE = 'duplicate'
FAILED = 'failed'


class IntakeResult:
    """Outcome of a POST submission. Truthy only when a record was created."""

    def __init__(self, status, record_id=None, error=None):
        self.status = status
        self.record_id = record_id
        self.error = error

    def __bool__(self):
        return self.status == CREATED and bool(self.record_id)

    def __repr__(self):
        return f"IntakeResult(status={self.status!r}, record_id={self.record_id!r})"

    @classmethod
    def created(cls, record_id):
        return cls(CREATED, record_id=record_id)

    @classmethod
    def future_date(cls):
        return cls(FUTURE_DATE)

    @classmethod
    def duplicate(cls):
        return cls(DUPLICATE)

    @classmethod
    def failed(cls, error):
        return cls(FAILED, error=error)


GENERIC_ERROR_HTML = '<h1 style= "color:red">Something went wrong</h1>'

RESULT_MESSAGES = {
    CREATED: {
        'color': 'green',
        'heading': 'Success! Record has been created with the ID:',
        'detail': 'Thank you for your submission.',
    },
    DUPLICATE: {
        'color': 'red',
        'heading': 'Record already exists.',
        'detail': 'Please try again with different data.',
    },
    FUTURE_DATE: {
        'color': 'red',
        'heading': 'The date cannot be a future date!!',
        'detail': 'Please enter the date of your last donation.',
    },
    FAILED: {
        'color': 'red',
        'heading': 'Something went wrong',
        'detail': 'Your details were not saved. Please try again.',
    },
}


# ============== RENDERING ==============

class FormRenderer:
    """Renders the form and result pages with the app's Jinja templates"""

    form_template = 'donor_form.html'
    result_template = 'intake_result.html'

    def render_form(self, form):
        return render_template(self.form_template, form=form)

    def render_result(self, result, message):
        return render_template(self.result_template, result=result, message=message)


# ============== HANDLER ==============

class DonorIntakeHandler:
    """Handles GET (render form) and POST (create donor record) submissions"""

    def __init__(self, store, renderer=None, logger=None, date_format=DEFAULT_DATE_FORMAT,
                 client_script=None, today=None):
        self.store = store
        self.renderer = renderer or FormRenderer()
        self.logger = logger or logging.getLogger(__name__)
        self.date_format = date_format
        self.client_script = client_script
        self.today = today or date.today

    def handle_get(self):
        try:
            form = build_donor_form(self.client_script, self.today())
            return self.renderer.render_form(form)
        except Exception:
            self.logger.exception('Error creating Form')
            return GENERIC_ERROR_HTML

    def handle_post(self, params):
        try:
            values = {field.record_field: params.get(field.id, '') for field in FORM_FIELDS}
            donation_date = parse_donation_date(params.get(DATE_PARAM), self.date_format)
            values['last_donation'] = donation_date

            if donation_date > self.today():
                self.logger.info('Rejected future donation date %s', donation_date.isoformat())
                return IntakeResult.future_date()

            if self.record_exists(values):
                self.logger.info('Donor record already exists for %s %s',
                                 values['first_name'], values['last_name'])
                return IntakeResult.duplicate()

            draft = self.store.create(DONOR_RECORD_TYPE)
            for field_id, value in values.items():
                try:
                    draft.set_value(field_id, value)
                except InvalidFieldValue as err:
                    self.logger.error('Issue with the entered value: %s', err)

            try:
                record_id = draft.save(enable_sourcing=True, ignore_mandatory_fields=False)
            except DuplicateRecord:
                self.logger.info('Donor record created concurrently; rejecting duplicate')
                return IntakeResult.duplicate()

            self.logger.info('New donor registered: %s', record_id)
            return IntakeResult.created(record_id)
        except Exception as err:
            self.logger.exception('Error creating blood donor record')
            return IntakeResult.failed(err)

    def record_exists(self, values):
        """True when a stored donor matches all six submitted fields"""
        filters = [
            SearchFilter('blood_group', 'anyof', [values['blood_group']]),
            SearchFilter('gender', 'anyof', [values['gender']]),
            SearchFilter('first_name', 'is', values['first_name']),
            SearchFilter('last_name', 'is', values['last_name']),
            SearchFilter('phone', 'is', values['phone']),
            SearchFilter('last_donation', 'on', values['last_donation']),
        ]
        matches = self.store.search(DONOR_RECORD_TYPE, filters, columns=(self.store.id_field,))
        return len(matches) > 0

    def render_result(self, result):
        return self.renderer.render_result(result, RESULT_MESSAGES[result.status])
