"""
Test fixtures for the blood donor intake apps.
Provides a temporary JSON store, an in-memory store, a fake DynamoDB table
and a fixed clock so no test depends on the real date or on AWS.
"""

import sys
from datetime import date
from pathlib import Path
from types import SimpleNamespace

import pytest
from boto3.dynamodb.types import TypeDeserializer
from botocore.exceptions import ClientError

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from donor_records import DonorStore, DuplicateRecord, generate_id, matches_all  # noqa: E402

TODAY = date(2025, 6, 1)

ASHA = {
    'custpage_first_name': 'Asha',
    'custpage_last_name': 'Rao',
    'custpage_gender': '2',
    'custpage_phone': '9999999999',
    'custpage_blood_group': '7',
    'custpage_last_donation': '2024-01-01',
}


class MemoryDonorStore(DonorStore):
    """Dict-backed store used to exercise the handler without I/O"""

    def __init__(self):
        self.records = {}
        self.searches = []

    def insert(self, record_type, values):
        key = values.get('dedupe_key')
        if key and any(r.get('dedupe_key') == key for r in self.records.values()):
            raise DuplicateRecord(key)
        record_id = generate_id('DON')
        self.records[record_id] = dict(values, donor_id=record_id)
        return record_id

    def _scan(self, record_type, filters):
        self.searches.append(list(filters))
        return [r for r in self.records.values() if matches_all(r, filters)]


def _evaluate(condition, item):
    """Evaluate the subset of boto3 conditions the DynamoDB store builds"""
    expression = condition.get_expression()
    operator = expression['operator']
    values = expression['values']
    if operator == 'AND':
        return _evaluate(values[0], item) and _evaluate(values[1], item)
    if operator == '=':
        return item.get(values[0].name) == values[1]
    if operator == 'IN':
        return item.get(values[0].name) in values[1]
    raise AssertionError(f'unexpected condition operator {operator}')


class FakeDynamoClient:
    def __init__(self, table):
        self.table = table
        self.transactions = []
        self._deserializer = TypeDeserializer()

    def transact_write_items(self, TransactItems):
        self.transactions.append(TransactItems)
        puts = [
            {k: self._deserializer.deserialize(v) for k, v in entry['Put']['Item'].items()}
            for entry in TransactItems
        ]
        reasons = [
            {'Code': 'ConditionalCheckFailed' if item['donor_id'] in self.table.items else 'None'}
            for item in puts
        ]
        if any(r['Code'] != 'None' for r in reasons):
            raise ClientError(
                {
                    'Error': {'Code': 'TransactionCanceledException', 'Message': 'cancelled'},
                    'CancellationReasons': reasons,
                },
                'TransactWriteItems',
            )
        for item in puts:
            self.table.items[item['donor_id']] = item


class FakeDynamoTable:
    """Just enough of a boto3 Table resource for DynamoDonorStore"""

    def __init__(self, name='BloodDonors', page_size=2):
        self.name = name
        self.items = {}
        self.page_size = page_size
        self.scans = []
        self.meta = SimpleNamespace(client=FakeDynamoClient(self))

    def scan(self, FilterExpression, ExclusiveStartKey=None):
        self.scans.append({'FilterExpression': FilterExpression, 'ExclusiveStartKey': ExclusiveStartKey})
        keys = sorted(self.items)
        start = keys.index(ExclusiveStartKey['donor_id']) + 1 if ExclusiveStartKey else 0
        page = keys[start:start + self.page_size]
        resp = {'Items': [self.items[k] for k in page if _evaluate(FilterExpression, self.items[k])]}
        if start + self.page_size < len(keys):
            resp['LastEvaluatedKey'] = {'donor_id': page[-1]}
        return resp


@pytest.fixture
def fixed_today():
    return lambda: TODAY


@pytest.fixture
def memory_store():
    return MemoryDonorStore()


@pytest.fixture
def asha_params():
    return dict(ASHA)


@pytest.fixture
def json_store(tmp_path):
    from app import JsonFileDonorStore

    return JsonFileDonorStore(str(tmp_path / 'data'))


@pytest.fixture
def dynamo_table():
    return FakeDynamoTable()
