"""
pytest configuration and shared fixtures

Usage:
    def test_something(demo_db, sample_obituary):
        assert demo_db.get_obituary('SMIT0001')
"""

import pytest
from PIL import Image
from reportlab.lib.utils import ImageReader

from obituary_services.archive_db import ArchiveDB


# ========== Environment ==========

@pytest.fixture(autouse=True)
def no_remote_logo(monkeypatch):
    """Reports are built without fetching the logo over the network"""
    monkeypatch.setenv('KDGS_LOGO_URL', '')


@pytest.fixture
def logo_image() -> ImageReader:
    """A tiny in-memory logo"""
    return ImageReader(Image.new('RGB', (4, 2), 'navy'))


# ========== Storage ==========

@pytest.fixture
def demo_db() -> ArchiveDB:
    """In-memory archive seeded with the sample obituaries"""
    return ArchiveDB(demo_mode=True)


@pytest.fixture
def empty_db() -> ArchiveDB:
    return ArchiveDB(demo_mode=True, seed_demo_data=False)


# ========== Records ==========

@pytest.fixture
def sample_obituary() -> dict:
    return {
        'reference': 'ERIC0004',
        'title': 'Mrs',
        'given_names': 'Ingrid Marie',
        'surname': 'ERICKSEN',
        'maiden_name': 'LUND',
        'birth_date': '1930-05-17',
        'birth_place': 'Bergen, Norway',
        'death_date': '2012-08-09',
        'death_place': 'Kelowna, BC',
        'cemetery': 'Kelowna Memorial Park',
        'periodical': 'Kelowna Daily Courier',
        'publish_date': '2012-08-14',
        'page': '8',
        'column': '2',
        'notes': 'Obituary continues on page 9.',
        'proofread': True,
        'relatives': [
            {'given_names': 'Karl', 'surname': 'ERICKSEN', 'relationship': 'Husband', 'predeceased': True},
            {'given_names': 'Anna', 'surname': 'BERG', 'relationship': 'Daughter', 'predeceased': False},
        ],
        'also_known_as': [{'surname': 'ERIKSEN', 'other_names': 'Inga'}],
        'images': ['ERIC0004'],
    }


@pytest.fixture
def large_family_obituary(sample_obituary) -> dict:
    """An obituary whose relatives run over several pages"""
    record = dict(sample_obituary)
    record['relatives'] = [
        {'given_names': f'Relative {i}', 'surname': 'ERICKSEN', 'relationship': 'Grandchild',
         'predeceased': i % 7 == 0}
        for i in range(1, 81)
    ]
    return record


def make_rows(count: int, prefix: str = 'TEST') -> list:
    """Table report rows with sequential references"""
    return [
        {
            'reference': f'{prefix}{i:04d}',
            'surname': prefix,
            'given_names': f'Person {i}',
            'maiden_name': '',
            'birth_date': '1920-01-01',
            'death_date': '1990-06-30',
            'proofread': i % 2 == 0,
            'images': [f'{prefix}{i:04d}'],
        }
        for i in range(1, count + 1)
    ]


@pytest.fixture
def table_rows():
    return make_rows


# ========== Flask ==========

@pytest.fixture
def app_module(monkeypatch, demo_db):
    import app as app_module

    monkeypatch.setenv('APP_PASSWORD', 'letmein')
    monkeypatch.setattr(app_module, 'get_archive_client', lambda: demo_db)
    app_module.app.config['TESTING'] = True
    return app_module


@pytest.fixture
def client(app_module):
    with app_module.app.test_client() as client:
        yield client


@pytest.fixture
def logged_in_client(client):
    with client.session_transaction() as sess:
        sess['authenticated'] = True
        sess['user'] = 'tester'
    return client
