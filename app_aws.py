"""
app_aws.py
Flask application for the blood donor intake form using AWS DynamoDB as the
backend storage.

Notes:
- Donor records live in one table (DONOR_TABLE, default "BloodDonors") with
  partition key donor_id.
- Each record is written together with a guard item keyed by the record's
  dedupe key, so two identical submissions can never both be stored.
"""
from flask import Flask, request
from decimal import Decimal
from functools import reduce
import logging
import os
import boto3
from boto3.dynamodb.conditions import Attr
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError, NoCredentialsError

from donor_intake import DEFAULT_DATE_FORMAT, DonorIntakeHandler, FormRenderer
from donor_records import (
    DonorStore,
    DuplicateRecord,
    StoreError,
    dedupe_key,
    generate_id,
    serialize_values,
)

# AWS Configuration
REGION = os.environ.get('AWS_REGION', 'us-east-1')
DONOR_TABLE = os.environ.get('DONOR_TABLE', 'BloodDonors')
SECRET_KEY = os.environ.get('SECRET_KEY', 'blood-donor-intake-aws-key')
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
DATE_FORMAT = os.environ.get('DONOR_DATE_FORMAT', DEFAULT_DATE_FORMAT)
CLIENT_SCRIPT = os.environ.get('DONOR_FORM_CLIENT_SCRIPT')

GUARD_PREFIX = 'DEDUPE#'

logger = logging.getLogger(__name__)

_serializer = TypeSerializer()


def _from_dynamo(value):
    # DynamoDB returns every number as Decimal
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


def _filter_condition(search_filter):
    field, operator, value = search_filter
    if operator == 'anyof':
        if not isinstance(value, (list, tuple, set)):
            value = [value]
        codes = []
        for v in value:
            try:
                codes.append(int(v))
            except (TypeError, ValueError):
                codes.append(v)
        return Attr(field).is_in(codes)
    if operator == 'is':
        return Attr(field).eq(value)
    if operator == 'on':
        return Attr(field).eq(value.isoformat() if hasattr(value, 'isoformat') else str(value)[:10])
    raise ValueError(f'Unsupported search operator: {operator}')


class DynamoDonorStore(DonorStore):
    """Donor records in a single DynamoDB table keyed by donor_id"""

    def __init__(self, table):
        self.table = table

    def insert(self, record_type, values):
        record_id = generate_id('DON')
        item = serialize_values(values)
        item[self.id_field] = record_id
        item['record_type'] = record_type
        item.setdefault('dedupe_key', dedupe_key(values))

        guard = {
            self.id_field: GUARD_PREFIX + item['dedupe_key'],
            'record_type': 'dedupe_guard',
            'guarded_id': record_id,
        }
        condition = f'attribute_not_exists({self.id_field})'
        try:
            self.table.meta.client.transact_write_items(TransactItems=[
                {'Put': {
                    'TableName': self.table.name,
                    'Item': {k: _serializer.serialize(v) for k, v in guard.items()},
                    'ConditionExpression': condition,
                }},
                {'Put': {
                    'TableName': self.table.name,
                    'Item': {k: _serializer.serialize(v) for k, v in item.items()},
                    'ConditionExpression': condition,
                }},
            ])
        except ClientError as e:
            reasons = e.response.get('CancellationReasons') or []
            if reasons and reasons[0].get('Code') == 'ConditionalCheckFailed':
                raise DuplicateRecord(item['dedupe_key']) from e
            logger.error("DynamoDB write to %s failed: %s", self.table.name, e)
            raise StoreError(f"Could not write to {self.table.name}") from e
        except NoCredentialsError as e:
            logger.error("No AWS credentials configured for %s", self.table.name)
            raise StoreError("AWS credentials are not configured") from e
        return record_id

    def _scan(self, record_type, filters):
        condition = reduce(
            lambda acc, cond: acc & cond,
            [_filter_condition(f) for f in filters],
            Attr('record_type').eq(record_type),
        )
        kwargs = {'FilterExpression': condition}
        items = []
        try:
            while True:
                resp = self.table.scan(**kwargs)
                items.extend(resp.get('Items', []))
                if 'LastEvaluatedKey' not in resp:
                    break
                kwargs['ExclusiveStartKey'] = resp['LastEvaluatedKey']
        except (ClientError, NoCredentialsError) as e:
            logger.error("DynamoDB scan of %s failed: %s", self.table.name, e)
            raise StoreError(f"Could not search {self.table.name}") from e
        return [{k: _from_dynamo(v) for k, v in item.items()} for item in items]


def create_app(store=None, date_format=DATE_FORMAT, client_script=CLIENT_SCRIPT, today=None):
    app = Flask(__name__)
    app.secret_key = SECRET_KEY
    app.logger.setLevel(LOG_LEVEL)

    if store is None:
        dynamodb = boto3.resource('dynamodb', region_name=REGION)
        store = DynamoDonorStore(dynamodb.Table(DONOR_TABLE))

    handler = DonorIntakeHandler(
        store,
        renderer=FormRenderer(),
        logger=app.logger,
        date_format=date_format,
        client_script=client_script,
        today=today,
    )
    app.config['DONOR_INTAKE_HANDLER'] = handler

    @app.route('/donor/register', methods=['GET', 'POST'])
    def donor_register():
        """Donor registration"""
        if request.method == 'POST':
            result = handler.handle_post(request.form)
            return handler.render_result(result)
        return handler.handle_get()

    return app


app = create_app()

if __name__ == '__main__':
    logging.basicConfig(level=LOG_LEVEL)
    app.run(debug=True, host='0.0.0.0', port=5000)
