import datetime
import json
from types import SimpleNamespace

import pytest
import requests

from romm_handheld_sync.cfw import DeviceLayout
from romm_handheld_sync.constants import CFW
from romm_handheld_sync.settings import Host, SettingsManager


def make_response(status_code=200, url='http://romm.local/api/heartbeat', json_data=None, content=b'', headers=None):
    """A real requests.Response with its body already in memory"""
    response = requests.Response()
    response.status_code = status_code
    response.url = url
    if json_data is not None:
        content = json.dumps(json_data).encode()
        response.headers['Content-Type'] = 'application/json'
    response.headers.update(headers or {})
    response._content = content
    response._content_consumed = True
    return response


def utc(*args):
    return datetime.datetime(*args, tzinfo=datetime.timezone.utc)


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.delenv('ROMM_SYNC_CONFIG_DIR', raising=False)
    return SettingsManager(tmp_path / 'config')


@pytest.fixture
def host():
    return Host(root_uri='http://romm.local', username='player', password='secret')


@pytest.fixture
def refresh_settings(tmp_path):
    return SimpleNamespace(cache_dir=tmp_path / 'cache', api_timeout=5)


@pytest.fixture
def knulli_layout(tmp_path):
    tables = {
        'platforms': {'gba': ['gba'], 'psx': ['psx']},
        'saves': {'gba': ['gba'], 'psx': ['psx']},
    }
    return DeviceLayout(CFW.KNULLI, base_path=tmp_path / 'userdata', tables=tables)


@pytest.fixture
def nextui_layout(tmp_path):
    tables = {
        'platforms': {
            'gba': ['Game Boy Advance (GBA)', 'Game Boy Advance (MGBA)'],
            'gb': ['Game Boy (GB)'],
        },
        'saves': {'gba': ['GBA', 'MGBA'], 'gb': ['GB']},
    }
    return DeviceLayout(CFW.NEXTUI, base_path=tmp_path / 'SDCARD', tables=tables)
