"""
Archive storage tests

Demo mode is exercised directly; live mode runs against in-memory stand-ins
for gspread worksheets.
"""

import threading

import gspread
import pytest

from obituary_services.archive_db import SCHEMA, ArchiveDB, ArchiveDBError
from obituary_services.references import InvalidSurnameError, ReferenceOverflowError


class FakeWorksheet:
    """Just enough of gspread.Worksheet for the archive"""

    def __init__(self, headers, rows=None):
        self.values = [list(headers)] + [list(row) for row in rows or []]
        self.updates = []

    def get_all_values(self):
        return [list(row) for row in self.values]

    def col_values(self, col):
        return [row[col - 1] for row in self.values if len(row) >= col]

    def append_row(self, row):
        self.values.append(list(row))

    def update(self, range_name=None, values=None):
        self.updates.append(range_name)
        row_number = int(''.join(ch for ch in range_name.split(':')[0] if ch.isdigit()))
        self.values[row_number - 1] = list(values[0])

    def delete_rows(self, index):
        del self.values[index - 1]


class FailingSpreadsheet:
    def worksheet(self, name):
        raise gspread.exceptions.GSpreadException('quota exceeded')


@pytest.fixture
def live_db():
    """An archive wired to fake worksheets, with one stored obituary"""
    db = ArchiveDB(demo_mode=True, seed_demo_data=False)
    db.demo_mode = False

    obituary = dict.fromkeys(SCHEMA['Obituaries'], '')
    obituary.update({'reference': 'SMIT0001', 'surname': 'SMITH', 'given_names': 'John',
                     'death_date': '1998-04-12', 'proofread': 'TRUE'})
    db._sheet_cache = {tab: FakeWorksheet(headers) for tab, headers in SCHEMA.items()}
    db._sheet_cache['Obituaries'].append_row([obituary[h] for h in SCHEMA['Obituaries']])
    db._sheet_cache['Relatives'].append_row(['REL-001', 'SMIT0001', 'Mary', 'SMITH', 'Wife', 'false'])
    db._sheet_cache['Images'].append_row(['SMIT0001', 'SMIT0001', '2024-01-01'])
    return db


class TestDemoMode:

    def test_seeded(self, demo_db):
        assert demo_db.demo_mode
        assert sorted(demo_db.get_references()) == [
            'ERIC0001', 'LIXX0001', 'OBRI0001', 'SMIT0001', 'SMIT0002'
        ]

    def test_unseeded(self, empty_db):
        assert empty_db.get_references() == []

    def test_schema_is_a_no_op(self, demo_db):
        demo_db.ensure_schema()

    def test_without_credentials_falls_back_to_demo(self, monkeypatch, tmp_path):
        monkeypatch.delenv('ARCHIVE_SERVICE_ACCOUNT_FILE', raising=False)
        monkeypatch.setenv('ARCHIVE_CREDENTIALS_PATH', str(tmp_path / 'missing.json'))
        monkeypatch.setenv('ARCHIVE_TOKEN_PATH', str(tmp_path / 'token.json'))
        assert ArchiveDB().demo_mode

    def test_live_mode_required_without_credentials(self, monkeypatch, tmp_path):
        monkeypatch.delenv('ARCHIVE_SERVICE_ACCOUNT_FILE', raising=False)
        monkeypatch.setenv('ARCHIVE_CREDENTIALS_PATH', str(tmp_path / 'missing.json'))
        monkeypatch.setenv('ARCHIVE_TOKEN_PATH', str(tmp_path / 'token.json'))
        with pytest.raises(ArchiveDBError):
            ArchiveDB(demo_mode=False)


class TestReading:

    def test_get_obituary_is_hydrated(self, demo_db):
        obituary = demo_db.get_obituary('SMIT0001')
        assert obituary['surname'] == 'SMITH'
        assert [r['relationship'] for r in obituary['relatives']] == ['Wife', 'Son']
        assert obituary['relatives'][1]['predeceased'] is True
        assert obituary['also_known_as'] == []
        assert obituary['images'] == ['SMIT0001']

    def test_aliases(self, demo_db):
        aka = demo_db.get_obituary('ERIC0001')['also_known_as']
        assert [(a['surname'], a['other_names']) for a in aka] == [('ERIKSSON', 'Lars Olof')]

    def test_missing(self, demo_db):
        assert demo_db.get_obituary('NOPE0001') is None

    def test_returned_records_are_copies(self, demo_db):
        demo_db.get_obituary('SMIT0001')['surname'] = 'CHANGED'
        assert demo_db.get_obituary('SMIT0001')['surname'] == 'SMITH'

    def test_paging(self, demo_db):
        page, total = demo_db.get_obituaries(offset=1, limit=2)
        assert total == 5
        assert [r['reference'] for r in page] == ['LIXX0001', 'OBRI0001']

    def test_paging_with_search(self, demo_db):
        page, total = demo_db.get_obituaries('smith', 0, 10)
        assert total == 2
        assert page[1]['images'] == ['SMIT0002', 'SMIT0002a']

    def test_search_uses_aliases(self, demo_db):
        assert [r['reference'] for r in demo_db.search_obituaries('@aka.surname eriksson')] == ['ERIC0001']

    def test_by_proofread(self, demo_db):
        assert [r['reference'] for r in demo_db.get_obituaries_by_proofread(True)] == [
            'ERIC0001', 'LIXX0001', 'SMIT0001'
        ]
        assert [r['reference'] for r in demo_db.get_obituaries_by_proofread(False)] == [
            'OBRI0001', 'SMIT0002'
        ]

    def test_find_duplicates_normalizes(self, demo_db):
        found = demo_db.find_duplicates('smith', 'JOHN robert', '1998-04-12')
        assert [r['reference'] for r in found] == ['SMIT0001']
        assert demo_db.find_duplicates('smith', 'john robert', '1998-04-13') == []


class TestCreate:

    def test_generates_next_reference(self, demo_db):
        obituary = demo_db.create_obituary({'surname': 'smith', 'given_names': 'jane ELLEN',
                                            'death_date': '2020-01-01'})
        assert obituary['reference'] == 'SMIT0003'
        assert obituary['surname'] == 'SMITH'
        assert obituary['given_names'] == 'Jane Ellen'
        assert obituary['proofread'] is False
        assert obituary['entered_on']

    def test_short_surname(self, demo_db):
        assert demo_db.create_obituary({'surname': 'Li'})['reference'] == 'LIXX0002'

    def test_children_are_written(self, demo_db):
        obituary = demo_db.create_obituary(
            {'surname': 'Nakamura', 'given_names': 'Ken'},
            relatives=[{'given_names': 'Aiko', 'surname': 'NAKAMURA', 'relationship': 'Wife'}],
            also_known_as=[{'surname': 'NAKAMURA', 'other_names': 'Kenny'}],
        )
        assert obituary['reference'] == 'NAKA0001'
        assert obituary['relatives'][0]['given_names'] == 'Aiko'
        assert obituary['relatives'][0]['predeceased'] is False
        assert obituary['also_known_as'][0]['other_names'] == 'Kenny'

    def test_audit_entry(self, demo_db):
        demo_db.create_obituary({'surname': 'Smith'}, user='tester')
        entry = demo_db._read('AuditLog')[-1]
        assert (entry['action'], entry['entity_id'], entry['user']) == ('create', 'SMIT0003', 'tester')

    def test_invalid_surname(self, demo_db):
        with pytest.raises(InvalidSurnameError):
            demo_db.create_obituary({'surname': '1234'})
        assert len(demo_db.get_references()) == 5

    def test_overflow(self, demo_db):
        demo_db._append('Obituaries', {'reference': 'ZZZZ9999', 'surname': 'ZZZZ'})
        with pytest.raises(ReferenceOverflowError):
            demo_db.create_obituary({'surname': 'Zzzzyx'})

    def test_concurrent_creations_get_distinct_references(self, empty_db):
        results = []

        def create():
            results.append(empty_db.create_obituary({'surname': 'Ericksen'})['reference'])

        threads = [threading.Thread(target=create) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(results) == [f'ERIC{i:04d}' for i in range(1, 11)]


class TestUpdateDelete:

    def test_update(self, demo_db):
        obituary = demo_db.update_obituary('SMIT0002', {'proofread': True, 'surname': 'smyth',
                                                        'reference': 'HACK0001'}, user='tester')
        assert obituary['reference'] == 'SMIT0002'
        assert obituary['surname'] == 'SMYTH'
        assert obituary['proofread'] is True
        assert obituary['edited_by'] == 'tester'
        assert demo_db.get_obituary('HACK0001') is None

    def test_update_replaces_relatives(self, demo_db):
        obituary = demo_db.update_obituary('SMIT0001', {}, relatives=[
            {'given_names': 'Peter', 'surname': 'SMITH', 'relationship': 'Brother'}
        ])
        assert [r['given_names'] for r in obituary['relatives']] == ['Peter']

    def test_update_keeps_relatives_when_not_given(self, demo_db):
        obituary = demo_db.update_obituary('SMIT0001', {'notes': 'checked'})
        assert len(obituary['relatives']) == 2
        assert obituary['notes'] == 'checked'

    def test_update_missing(self, demo_db):
        assert demo_db.update_obituary('NOPE0001', {'notes': 'x'}) is None

    def test_delete_removes_children(self, demo_db):
        assert demo_db.delete_obituary('SMIT0001') is True
        assert demo_db.get_obituary('SMIT0001') is None
        assert [r for r in demo_db._read('Relatives') if r['reference'] == 'SMIT0001'] == []
        assert demo_db.delete_obituary('SMIT0001') is False

    def test_deleted_suffix_is_not_reused(self, demo_db):
        demo_db.delete_obituary('SMIT0001')
        assert demo_db.create_obituary({'surname': 'Smith'})['reference'] == 'SMIT0003'

    def test_delete_removes_image_names(self, demo_db):
        demo_db.delete_obituary('SMIT0002')
        assert demo_db.get_image_names('SMIT0002') == []
        assert demo_db.get_image_names('SMIT0001') == ['SMIT0001']

    def test_freed_highest_reference_starts_without_images(self, demo_db):
        demo_db.delete_obituary('SMIT0002')
        obituary = demo_db.create_obituary({'surname': 'Smith', 'given_names': 'Brand New'})
        assert obituary['reference'] == 'SMIT0002'
        assert obituary['images'] == []
        assert demo_db.generate_file_number('Smith', 'Brand New') == ('SMIT0002', 'SMIT0002')


class TestFileNumbers:

    def test_new_person_gets_new_reference(self, demo_db):
        assert demo_db.generate_file_number('Erickson', 'Nils', '2001-01-01') == ('ERIC0002', None)

    def test_existing_person_without_extra_images(self, demo_db):
        assert demo_db.generate_file_number('Smith', 'john robert', '1998-04-12') == (
            'SMIT0001a', 'SMIT0001'
        )

    def test_existing_person_with_images(self, demo_db):
        assert demo_db.generate_file_number('SMITH', 'Mary Anne', '2003-11-30') == (
            'SMIT0002b', 'SMIT0002'
        )

    def test_existing_person_without_images(self, demo_db):
        assert demo_db.generate_file_number("O'Brien", 'Patrick', '2010-07-04') == (
            'OBRI0001', 'OBRI0001'
        )

    def test_surname_only(self, demo_db):
        assert demo_db.generate_file_number('Li') == ('LIXX0002', None)

    def test_add_image(self, demo_db):
        demo_db.add_image('SMIT0002b', 'SMIT0002')
        assert demo_db.get_image_names('SMIT0002') == ['SMIT0002', 'SMIT0002a', 'SMIT0002b']
        assert demo_db.generate_file_number('Smith', 'Mary Anne', '2003-11-30')[0] == 'SMIT0002c'


class TestLiveMode:

    def test_reads_rows(self, live_db):
        obituary = live_db.get_obituary('SMIT0001')
        assert obituary['proofread'] is True
        assert obituary['relatives'][0]['predeceased'] is False
        assert obituary['images'] == ['SMIT0001']

    def test_create_appends_rows(self, live_db):
        obituary = live_db.create_obituary({'surname': 'Smith', 'given_names': 'anne', 'proofread': False})
        assert obituary['reference'] == 'SMIT0002'

        stored = live_db._sheet_cache['Obituaries'].values[-1]
        assert stored[0] == 'SMIT0002'
        assert stored[SCHEMA['Obituaries'].index('proofread')] == 'false'

        log = live_db._sheet_cache['AuditLog'].values[-1]
        assert log[0] == 'LOG-001'
        assert log[3] == 'create'

    def test_update_writes_whole_row(self, live_db):
        live_db.update_obituary('SMIT0001', {'notes': 'checked'})
        sheet = live_db._sheet_cache['Obituaries']
        assert sheet.updates == ['A2:Y2']
        assert sheet.values[1][SCHEMA['Obituaries'].index('notes')] == 'checked'

    def test_delete_removes_rows(self, live_db):
        assert live_db.delete_obituary('SMIT0001')
        assert live_db._sheet_cache['Obituaries'].values == [SCHEMA['Obituaries']]
        assert live_db._sheet_cache['Relatives'].values == [SCHEMA['Relatives']]

    def test_delete_removes_image_rows(self, live_db):
        live_db._sheet_cache['Images'].append_row(['SMIT0001a', 'SMIT0001', '2024-02-01'])
        live_db._sheet_cache['Images'].append_row(['SMIT0011', 'SMIT0011', '2024-02-01'])
        live_db.delete_obituary('SMIT0001')
        assert [row[0] for row in live_db._sheet_cache['Images'].values[1:]] == ['SMIT0011']

    def test_api_errors_become_archive_errors(self):
        db = ArchiveDB(demo_mode=True, seed_demo_data=False)
        db.demo_mode = False
        db.spreadsheet = FailingSpreadsheet()
        with pytest.raises(ArchiveDBError):
            db.get_references()
