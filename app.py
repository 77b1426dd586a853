"""
Blood Donor Intake - local edition
Flask application storing donor records in JSON files under data/
"""

from flask import Flask, request
import json
import logging
import os
import tempfile
import threading

from donor_intake import DEFAULT_DATE_FORMAT, DonorIntakeHandler, FormRenderer
from donor_records import (
    DonorStore,
    DuplicateRecord,
    StoreError,
    dedupe_key,
    generate_id,
    matches_all,
    serialize_values,
)

# ============== CONFIGURATION ==============

DATA_DIR = os.environ.get('DONOR_DATA_DIR', os.path.join(os.path.dirname(__file__), 'data'))
SECRET_KEY = os.environ.get('SECRET_KEY', 'blood-donor-intake-dev-key')
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
DATE_FORMAT = os.environ.get('DONOR_DATE_FORMAT', DEFAULT_DATE_FORMAT)
CLIENT_SCRIPT = os.environ.get('DONOR_FORM_CLIENT_SCRIPT')

logger = logging.getLogger(__name__)

# ============== DATA STORAGE (Persistent JSON Files) ==============


def load_json_file(file_path, default_value=None):
    """Load data from JSON file"""
    if not os.path.exists(file_path):
        return default_value if default_value is not None else {}
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.error("Error loading %s: %s", file_path, e)
        raise StoreError(f"Could not read {file_path}") from e


def save_json_file(file_path, data):
    """Save data to JSON file; readers only ever see a complete file"""
    directory = os.path.dirname(file_path) or '.'
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile('w', encoding='utf-8', dir=directory,
                                         suffix='.tmp', delete=False) as f:
            tmp_path = f.name
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, file_path)
    except (OSError, TypeError, ValueError) as e:
        logger.error("Error saving %s: %s", file_path, e)
        if tmp_path and os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise StoreError(f"Could not write {file_path}") from e


class JsonFileDonorStore(DonorStore):
    """One JSON file per record type, keyed by record id"""

    # shared by every store in the process so check-and-insert stays atomic
    _lock = threading.Lock()

    def __init__(self, data_dir=DATA_DIR):
        self.data_dir = data_dir

    def file_path(self, record_type):
        return os.path.join(self.data_dir, f'{record_type}.json')

    def insert(self, record_type, values):
        path = self.file_path(record_type)
        with self._lock:
            records = load_json_file(path, {})
            key = values.get('dedupe_key') or dedupe_key(values)
            if any(r.get('dedupe_key') == key for r in records.values()):
                raise DuplicateRecord(key)

            record_id = generate_id('DON')
            while record_id in records:
                record_id = generate_id('DON')
            item = serialize_values(values)
            item[self.id_field] = record_id
            item['dedupe_key'] = key
            records[record_id] = item

            os.makedirs(self.data_dir, exist_ok=True)
            save_json_file(path, records)
        return record_id

    def _scan(self, record_type, filters):
        # no lock: writes replace the file whole, so a search sees the last complete version
        records = load_json_file(self.file_path(record_type), {})
        return [item for item in records.values() if matches_all(item, filters)]


# ============== APPLICATION ==============


def create_app(store=None, date_format=DATE_FORMAT, client_script=CLIENT_SCRIPT, today=None):
    app = Flask(__name__)
    app.secret_key = SECRET_KEY
    app.logger.setLevel(LOG_LEVEL)

    handler = DonorIntakeHandler(
        store or JsonFileDonorStore(),
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

# ============== MAIN ==============

if __name__ == '__main__':
    logging.basicConfig(level=LOG_LEVEL)
    app.run(debug=True, host='0.0.0.0', port=5000)
