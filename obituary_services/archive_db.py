"""
Google Sheets Database Service
Persistent storage layer using Google Sheets for the Obituary Archive.

Supports both live mode (with OAuth or service account credentials) and demo
mode (without credentials), where the tables live in memory and are seeded
with a few sample obituaries.
"""

import os
import json
import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterator, Optional

import gspread
from gspread.utils import rowcol_to_a1
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from .references import (
    PREFIX_LENGTH, SUFFIX_LENGTH,
    generate_reference, next_image_file_name, normalize_given_names,
    normalize_surname, reference_prefix
)
from .search import filter_obituaries, parse_date

logger = logging.getLogger(__name__)

# Google Sheets API scopes
SCOPES = [
    'https://www.googleapis.com/auth/spreadsheets',
    'https://www.googleapis.com/auth/drive.file'
]

SPREADSHEET_TITLE = 'Obituary Archive Database'

# Schema definition - Tab names and column headers
SCHEMA = {
    'Obituaries': [
        'reference', 'title', 'given_names', 'surname', 'maiden_name',
        'birth_date', 'birth_place', 'death_date', 'death_place', 'cemetery',
        'periodical', 'publish_date', 'page', 'column', 'notes',
        'proofread', 'proofread_date', 'proofread_by',
        'entered_by', 'entered_on', 'edited_by', 'edited_on',
        'batch_number', 'file_box_year', 'file_box_number'
    ],
    'Relatives': [
        'relative_id', 'reference', 'given_names', 'surname', 'relationship', 'predeceased'
    ],
    'AlsoKnownAs': [
        'aka_id', 'reference', 'surname', 'other_names'
    ],
    'Images': [
        'name', 'reference', 'created_at'
    ],
    'AuditLog': [
        'log_id', 'timestamp', 'user', 'action', 'entity_type', 'entity_id', 'details'
    ]
}

ID_PREFIXES = {
    'Relatives': 'REL',
    'AlsoKnownAs': 'AKA',
    'AuditLog': 'LOG'
}

BOOLEAN_FIELDS = ('proofread', 'predeceased')
JSON_FIELDS = ('details',)

DEMO_OBITUARIES = [
    {
        'reference': 'SMIT0001', 'title': 'Mr', 'given_names': 'John Robert', 'surname': 'SMITH',
        'birth_date': '1921-06-02', 'birth_place': 'Vernon, BC', 'death_date': '1998-04-12',
        'death_place': 'Kelowna, BC', 'cemetery': 'Kelowna Memorial Park',
        'periodical': 'Kelowna Daily Courier', 'publish_date': '1998-04-15', 'page': '12', 'column': '3',
        'proofread': True, 'proofread_date': '2023-02-01', 'proofread_by': 'mwilson',
        'entered_by': 'jdoe', 'entered_on': '2023-01-10', 'batch_number': 'B2023-01',
        'file_box_year': '2023', 'file_box_number': '1',
        'relatives': [
            {'given_names': 'Mary Anne', 'surname': 'SMITH', 'relationship': 'Wife', 'predeceased': False},
            {'given_names': 'Thomas', 'surname': 'SMITH', 'relationship': 'Son', 'predeceased': True},
        ],
        'also_known_as': [],
        'images': ['SMIT0001'],
    },
    {
        'reference': 'SMIT0002', 'title': 'Mrs', 'given_names': 'Mary Anne', 'surname': 'SMITH',
        'maiden_name': 'JONES', 'birth_date': '1925-09-18', 'death_date': '2003-11-30',
        'death_place': 'Kelowna, BC', 'periodical': 'Kelowna Daily Courier', 'publish_date': '2003-12-03',
        'proofread': False, 'entered_by': 'jdoe', 'entered_on': '2023-01-11', 'batch_number': 'B2023-01',
        'file_box_year': '2023', 'file_box_number': '1',
        'relatives': [],
        'also_known_as': [],
        'images': ['SMIT0002', 'SMIT0002a'],
    },
    {
        'reference': 'ERIC0001', 'given_names': 'Lars', 'surname': 'ERICKSON',
        'birth_date': '1902-01-30', 'birth_place': 'Gothenburg, Sweden', 'death_date': '1985-02-14',
        'death_place': 'Rutland, BC', 'cemetery': 'Lakeview Memorial Gardens',
        'periodical': 'Capital News', 'publish_date': '1985-02-20',
        'proofread': True, 'proofread_date': '2023-03-05', 'proofread_by': 'mwilson',
        'entered_by': 'akhan', 'entered_on': '2023-02-20', 'batch_number': 'B2023-02',
        'file_box_year': '2023', 'file_box_number': '2',
        'relatives': [],
        'also_known_as': [{'surname': 'ERIKSSON', 'other_names': 'Lars Olof'}],
        'images': [],
    },
    {
        'reference': 'OBRI0001', 'given_names': 'Patrick', 'surname': "O'BRIEN",
        'death_date': '2010-07-04', 'periodical': 'Kelowna Daily Courier',
        'proofread': False, 'entered_by': 'akhan', 'entered_on': '2024-05-02', 'batch_number': 'B2024-07',
        'file_box_year': '2024', 'file_box_number': '3',
        'relatives': [],
        'also_known_as': [],
        'images': [],
    },
    {
        'reference': 'LIXX0001', 'given_names': 'Wei', 'surname': 'LI',
        'birth_date': '1940-03-08', 'death_date': '2015-09-21', 'death_place': 'Kelowna, BC',
        'proofread': True, 'proofread_date': '2024-06-11', 'proofread_by': 'jdoe',
        'entered_by': 'jdoe', 'entered_on': '2024-06-01', 'batch_number': 'B2024-07',
        'file_box_year': '2024', 'file_box_number': '3',
        'relatives': [],
        'also_known_as': [],
        'images': ['LIXX0001'],
    },
]


class ArchiveDBError(Exception):
    """Raised when Google Sheets cannot be read or written"""
    pass


class ArchiveDB:
    """Google Sheets database client for the obituary archive"""

    def __init__(self, demo_mode: Optional[bool] = None, seed_demo_data: bool = True):
        self.demo_mode = True
        self.client = None
        self.spreadsheet = None
        self._sheet_cache: dict[str, Any] = {}
        self._tables: dict[str, list[dict]] = {tab: [] for tab in SCHEMA}
        self._counters: dict[str, int] = {}
        self._prefix_locks: dict[str, threading.Lock] = {}
        self._prefix_locks_guard = threading.Lock()

        if demo_mode is None:
            self._connect()
        elif not demo_mode:
            self._connect(required=True)

        if self.demo_mode:
            logger.info("ArchiveDB running in DEMO MODE - using in-memory tables")
            if seed_demo_data:
                self.seed_demo_data()

    def _connect(self, required: bool = False):
        credentials = None
        service_account_file = os.environ.get('ARCHIVE_SERVICE_ACCOUNT_FILE')

        try:
            if service_account_file:
                self.client = gspread.service_account(filename=service_account_file, scopes=SCOPES)
            else:
                credentials = self._load_credentials()
                if not credentials:
                    if required:
                        raise ArchiveDBError("No Google credentials configured")
                    logger.info("ArchiveDB running in DEMO MODE - no credentials configured")
                    return
                self.client = gspread.authorize(credentials)

            self._open_or_create_spreadsheet()
            self.demo_mode = False
            logger.info("ArchiveDB connected to Google Sheets successfully")
        except Exception as e:
            logger.error(f"Failed to initialize ArchiveDB: {e}")
            if required:
                raise ArchiveDBError(f"Failed to connect to Google Sheets: {e}") from e
            logger.info("ArchiveDB falling back to DEMO MODE")

    def _load_credentials(self) -> Optional[Credentials]:
        """Load Google OAuth credentials, refreshing or re-authorizing as needed"""
        default_creds_path = Path.home() / '.config' / 'obituary-archive' / 'credentials.json'
        default_token_path = Path.home() / '.config' / 'obituary-archive' / 'token.json'

        creds_path = Path(os.environ.get('ARCHIVE_CREDENTIALS_PATH', default_creds_path)).expanduser()
        token_path = Path(os.environ.get('ARCHIVE_TOKEN_PATH', default_token_path)).expanduser()

        creds = None

        # Check for existing token
        if token_path.exists():
            try:
                creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)
                logger.info(f"Loaded existing token from {token_path}")
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load existing token: {e}")

        if creds and creds.valid:
            return creds

        if creds and creds.expired and creds.refresh_token:
            try:
                creds.refresh(Request())
                logger.info("Refreshed expired token")
            except Exception as e:
                logger.warning(f"Failed to refresh token: {e}")
                creds = None
        else:
            creds = None

        if not creds:
            if not creds_path.exists():
                logger.warning(f"No credentials file at {creds_path}")
                return None

            flow = InstalledAppFlow.from_client_secrets_file(str(creds_path), SCOPES)
            creds = flow.run_local_server(port=0)
            logger.info("Completed OAuth flow successfully")

        # Save token for future use
        try:
            token_path.parent.mkdir(parents=True, exist_ok=True)
            with open(token_path, 'w') as f:
                f.write(creds.to_json())
            logger.info(f"Saved token to {token_path}")
        except OSError as e:
            logger.warning(f"Failed to save token: {e}")

        return creds

    def _open_or_create_spreadsheet(self):
        """Open existing spreadsheet or create new one"""
        sheet_id = os.environ.get('ARCHIVE_SHEET_ID')

        if sheet_id:
            self.spreadsheet = self.client.open_by_key(sheet_id)
            logger.info(f"Opened existing spreadsheet: {self.spreadsheet.title}")
            return

        self.spreadsheet = self.client.create(SPREADSHEET_TITLE)
        logger.info(f"Created new spreadsheet: {self.spreadsheet.title} (ID: {self.spreadsheet.id})")
        logger.info(f"Set ARCHIVE_SHEET_ID={self.spreadsheet.id} to use this spreadsheet")

    def _get_sheet(self, tab_name: str) -> Any:
        """Get or create worksheet with headers"""
        if tab_name in self._sheet_cache:
            return self._sheet_cache[tab_name]

        try:
            worksheet = self.spreadsheet.worksheet(tab_name)
        except gspread.WorksheetNotFound:
            worksheet = self.spreadsheet.add_worksheet(
                title=tab_name,
                rows=1000,
                cols=len(SCHEMA[tab_name])
            )
            worksheet.update(range_name='A1', values=[SCHEMA[tab_name]])
            logger.info(f"Created worksheet: {tab_name}")

        self._sheet_cache[tab_name] = worksheet
        return worksheet

    @contextmanager
    def _sheets_call(self, what: str) -> Iterator[None]:
        """Turn Google API failures into ArchiveDBError"""
        try:
            yield
        except gspread.exceptions.GSpreadException as e:
            logger.error(f"Google Sheets error while {what}: {e}")
            raise ArchiveDBError(f"Storage unavailable while {what}") from e

    # ========== Row conversion ==========

    def _row_to_dict(self, headers: list[str], row: list[str]) -> dict[str, Any]:
        """Convert a row to a dictionary using headers"""
        result = {}
        for i, header in enumerate(headers):
            value = row[i] if i < len(row) else ''
            if header in JSON_FIELDS:
                try:
                    value = json.loads(value) if value else {}
                except json.JSONDecodeError:
                    pass
            elif header in BOOLEAN_FIELDS:
                value = value.lower() == 'true' if isinstance(value, str) else bool(value)
            result[header] = value
        return result

    def _dict_to_row(self, headers: list[str], data: dict[str, Any]) -> list[str]:
        """Convert a dictionary to a row based on headers"""
        row = []
        for header in headers:
            value = data.get(header, '')
            if header in JSON_FIELDS and isinstance(value, (dict, list)):
                value = json.dumps(value)
            elif isinstance(value, bool):
                value = str(value).lower()
            row.append(str(value) if value is not None else '')
        return row

    # ========== Table primitives ==========

    def _read(self, tab_name: str) -> list[dict]:
        """All rows of a tab as dictionaries"""
        if self.demo_mode:
            return [dict(row) for row in self._tables[tab_name]]

        with self._sheets_call(f"reading {tab_name}"):
            all_values = self._get_sheet(tab_name).get_all_values()

        if len(all_values) <= 1:
            return []
        headers = all_values[0]
        return [self._row_to_dict(headers, row) for row in all_values[1:] if row and row[0]]

    def _append(self, tab_name: str, data: dict[str, Any]):
        headers = SCHEMA[tab_name]
        if self.demo_mode:
            self._tables[tab_name].append({h: data.get(h, '') for h in headers})
            return

        with self._sheets_call(f"writing {tab_name}"):
            self._get_sheet(tab_name).append_row(self._dict_to_row(headers, data))

    def _update_first(self, tab_name: str, key: str, data: dict[str, Any]) -> Optional[dict]:
        """Merge ``data`` into the row whose first column equals ``key``"""
        if self.demo_mode:
            for row in self._tables[tab_name]:
                if row.get(SCHEMA[tab_name][0]) == key:
                    row.update({h: v for h, v in data.items() if h in SCHEMA[tab_name]})
                    return dict(row)
            return None

        with self._sheets_call(f"updating {tab_name}"):
            sheet = self._get_sheet(tab_name)
            all_values = sheet.get_all_values()
            headers = all_values[0] if all_values else SCHEMA[tab_name]

            for i, row in enumerate(all_values[1:], start=2):
                if row and row[0] == key:
                    existing = self._row_to_dict(headers, row)
                    existing.update(data)
                    new_row = self._dict_to_row(headers, existing)
                    sheet.update(range_name=f'A{i}:{rowcol_to_a1(i, len(headers))}', values=[new_row])
                    return existing
        return None

    def _delete_where(self, tab_name: str, field: str, value: str, prefix: bool = False) -> int:
        """
        Delete every row whose ``field`` equals ``value`` (or starts with it
        when ``prefix`` is set); returns the count
        """
        def hit(cell: str) -> bool:
            return cell.startswith(value) if prefix else cell == value

        if self.demo_mode:
            before = len(self._tables[tab_name])
            self._tables[tab_name] = [r for r in self._tables[tab_name] if not hit(str(r.get(field, '')))]
            return before - len(self._tables[tab_name])

        with self._sheets_call(f"deleting from {tab_name}"):
            sheet = self._get_sheet(tab_name)
            all_values = sheet.get_all_values()
            if len(all_values) <= 1:
                return 0
            col = all_values[0].index(field)
            rows = [i for i, row in enumerate(all_values[1:], start=2) if len(row) > col and hit(row[col])]
            # Bottom up so earlier row numbers stay valid
            for i in reversed(rows):
                sheet.delete_rows(i)
            return len(rows)

    def _generate_id(self, tab_name: str) -> str:
        """Generate unique ID like REL-001, AKA-002, etc."""
        prefix = ID_PREFIXES[tab_name]
        if self.demo_mode:
            self._counters[tab_name] = self._counters.get(tab_name, 0) + 1
            return f"{prefix}-{self._counters[tab_name]:03d}"

        with self._sheets_call(f"reading {tab_name} ids"):
            all_values = self._get_sheet(tab_name).col_values(1)

        max_num = 0
        for id_val in all_values:
            if not id_val.startswith(prefix + '-'):
                continue
            try:
                max_num = max(max_num, int(id_val.split('-')[1]))
            except (IndexError, ValueError):
                continue
        return f"{prefix}-{max_num + 1:03d}"

    def _log_action(self, action: str, entity_type: str, entity_id: str,
                    details: Optional[dict] = None, user: str = 'system'):
        """Log action to AuditLog sheet"""
        if self.demo_mode:
            logger.info(f"[DEMO] Audit log: {action} on {entity_type} {entity_id}")

        self._append('AuditLog', {
            'log_id': self._generate_id('AuditLog'),
            'timestamp': datetime.now().isoformat(),
            'user': user,
            'action': action,
            'entity_type': entity_type,
            'entity_id': entity_id,
            'details': details or {}
        })

    @contextmanager
    def _prefix_lock(self, prefix: str) -> Iterator[None]:
        """Serialize reference generation for one surname prefix"""
        with self._prefix_locks_guard:
            lock = self._prefix_locks.setdefault(prefix, threading.Lock())
        with lock:
            yield

    # ========== Setup Methods ==========

    def ensure_schema(self):
        """Create all tabs with headers if missing"""
        if self.demo_mode:
            logger.info("[DEMO] Would ensure schema for all tabs")
            return

        with self._sheets_call("creating tabs"):
            for tab_name in SCHEMA:
                self._get_sheet(tab_name)
        logger.info("Schema ensured for all tabs")

    def seed_demo_data(self):
        """Load the sample obituaries into the in-memory tables"""
        for sample in DEMO_OBITUARIES:
            record = {k: v for k, v in sample.items() if k in SCHEMA['Obituaries']}
            self._append('Obituaries', record)
            self._write_children(record['reference'], sample['relatives'], sample['also_known_as'])
            for name in sample['images']:
                self._append('Images', {'name': name, 'reference': record['reference'],
                                        'created_at': record.get('entered_on', '')})
        logger.info(f"[DEMO] Seeded {len(DEMO_OBITUARIES)} sample obituaries")

    # ========== Obituaries ==========

    def _hydrate(self, records: list[dict]) -> list[dict]:
        """Attach relatives, aliases and image names to obituary rows"""
        relatives = self._read('Relatives')
        aliases = self._read('AlsoKnownAs')
        images = self._read('Images')

        for record in records:
            reference = record['reference']
            record['relatives'] = [r for r in relatives if r.get('reference') == reference]
            record['also_known_as'] = [a for a in aliases if a.get('reference') == reference]
            record['images'] = sorted(i['name'] for i in images if i.get('reference') == reference)
        return records

    def _all_obituaries(self) -> list[dict]:
        return self._hydrate(self._read('Obituaries'))

    def get_references(self) -> list[str]:
        return [r['reference'] for r in self._read('Obituaries') if r.get('reference')]

    def get_obituaries(self, search: Optional[str] = None, offset: int = 0,
                       limit: Optional[int] = None) -> tuple[list[dict], int]:
        """
        Get one page of obituaries matching a dashboard search.

        Returns:
            (records on the page, total number of matches)
        """
        matched = filter_obituaries(self._all_obituaries(), search)
        end = None if limit is None else offset + limit
        return matched[offset:end], len(matched)

    def search_obituaries(self, query: Optional[str]) -> list[dict]:
        """All obituaries matching a dashboard search, ordered by reference"""
        return filter_obituaries(self._all_obituaries(), query)

    def get_obituaries_by_proofread(self, proofread: bool) -> list[dict]:
        records = [r for r in self._read('Obituaries') if bool(r.get('proofread')) == proofread]
        return sorted(records, key=lambda r: r['reference'])

    def get_obituary(self, reference: str) -> Optional[dict]:
        """Get a single obituary with its relatives, aliases and images"""
        for record in self._read('Obituaries'):
            if record.get('reference') == reference:
                return self._hydrate([record])[0]
        return None

    def find_duplicates(self, surname: str, given_names: str, death_date: Any = None) -> list[dict]:
        """Obituaries for the same person: same surname, given names and death date"""
        wanted_surname = normalize_surname(surname)
        wanted_given = normalize_given_names(given_names)
        wanted_death = parse_date(death_date)

        return [
            r for r in self._read('Obituaries')
            if normalize_surname(r.get('surname')) == wanted_surname
            and normalize_given_names(r.get('given_names')) == wanted_given
            and parse_date(r.get('death_date')) == wanted_death
        ]

    def _write_children(self, reference: str, relatives: Optional[list[dict]],
                        also_known_as: Optional[list[dict]]):
        for relative in relatives or []:
            self._append('Relatives', {
                **relative,
                'relative_id': self._generate_id('Relatives'),
                'reference': reference,
                'predeceased': bool(relative.get('predeceased')),
            })
        for aka in also_known_as or []:
            self._append('AlsoKnownAs', {
                **aka,
                'aka_id': self._generate_id('AlsoKnownAs'),
                'reference': reference,
            })

    def create_obituary(self, data: dict, relatives: Optional[list[dict]] = None,
                        also_known_as: Optional[list[dict]] = None, user: str = 'system') -> dict:
        """
        Create an obituary under a freshly generated reference.

        Raises:
            InvalidSurnameError: if the surname has no letters
            ReferenceOverflowError: if the surname prefix is exhausted
            ArchiveDBError: if Google Sheets fails
        """
        record = {k: v for k, v in data.items() if k in SCHEMA['Obituaries']}
        record['surname'] = normalize_surname(data.get('surname', ''))
        record['given_names'] = normalize_given_names(data.get('given_names', ''))
        record['proofread'] = bool(data.get('proofread'))
        record['entered_by'] = data.get('entered_by') or user
        record['entered_on'] = data.get('entered_on') or date.today().isoformat()

        prefix = reference_prefix(record['surname'])
        with self._prefix_lock(prefix):
            # Read and append under the lock so two creations never share a reference
            reference = generate_reference(record['surname'], self.get_references())
            record['reference'] = reference
            self._append('Obituaries', record)

        self._write_children(reference, relatives, also_known_as)
        self._log_action('create', 'Obituaries', reference, {'surname': record['surname']}, user)
        logger.info(f"Created obituary {reference}")
        return self.get_obituary(reference)

    def update_obituary(self, reference: str, data: dict, relatives: Optional[list[dict]] = None,
                        also_known_as: Optional[list[dict]] = None, user: str = 'system') -> Optional[dict]:
        """
        Update an obituary. The reference itself never changes.

        Relatives and aliases are replaced when given.

        Returns:
            The updated obituary, or None if the reference does not exist
        """
        changes = {k: v for k, v in data.items() if k in SCHEMA['Obituaries'] and k != 'reference'}
        if 'surname' in changes:
            changes['surname'] = normalize_surname(changes['surname'])
        if 'given_names' in changes:
            changes['given_names'] = normalize_given_names(changes['given_names'])
        changes['edited_by'] = user
        changes['edited_on'] = date.today().isoformat()

        if self._update_first('Obituaries', reference, changes) is None:
            return None

        if relatives is not None:
            self._delete_where('Relatives', 'reference', reference)
            self._write_children(reference, relatives, None)
        if also_known_as is not None:
            self._delete_where('AlsoKnownAs', 'reference', reference)
            self._write_children(reference, None, also_known_as)

        self._log_action('update', 'Obituaries', reference, changes, user)
        logger.info(f"Updated obituary {reference}")
        return self.get_obituary(reference)

    def delete_obituary(self, reference: str, user: str = 'system') -> bool:
        """Delete an obituary with its relatives, aliases and image names"""
        if not self._delete_where('Obituaries', 'reference', reference):
            return False

        self._delete_where('Relatives', 'reference', reference)
        self._delete_where('AlsoKnownAs', 'reference', reference)
        self._delete_where('Images', 'name', reference[:PREFIX_LENGTH + SUFFIX_LENGTH], prefix=True)
        self._log_action('delete', 'Obituaries', reference, None, user)
        logger.info(f"Deleted obituary {reference}")
        return True

    # ========== Images / file numbers ==========

    def get_image_names(self, base_reference: str) -> list[str]:
        base = base_reference[:PREFIX_LENGTH + SUFFIX_LENGTH]
        return sorted(i['name'] for i in self._read('Images') if i.get('name', '').startswith(base))

    def add_image(self, name: str, reference: str, user: str = 'system'):
        self._append('Images', {'name': name, 'reference': reference,
                                'created_at': datetime.now().isoformat()})
        self._log_action('create', 'Images', name, {'reference': reference}, user)

    def generate_file_number(self, surname: str, given_names: str = '',
                             death_date: Any = None) -> tuple[str, Optional[str]]:
        """
        Work out the file number for a newly scanned obituary.

        When the person is already in the archive the file number is the
        next image name for the existing reference; otherwise it is a new
        reference for the surname.

        Returns:
            (file number, existing reference or None)
        """
        duplicates = self.find_duplicates(surname, given_names, death_date) if given_names else []
        if not duplicates:
            return generate_reference(surname, self.get_references()), None

        existing = duplicates[0]['reference']
        return next_image_file_name(existing, self.get_image_names(existing)), existing


# Singleton instance
_client: Optional[ArchiveDB] = None


def get_client() -> ArchiveDB:
    """Get or create ArchiveDB client instance"""
    global _client
    if _client is None:
        _client = ArchiveDB()
    return _client
