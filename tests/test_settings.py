import configparser

from romm_handheld_sync.settings import DirectoryMapping, Host, SettingsManager, default_config_dir


def test_first_run_writes_defaults(tmp_path):
    manager = SettingsManager(tmp_path)

    assert manager.config_file.exists()
    assert manager.api_timeout == 60
    assert manager.download_timeout == 3600
    assert manager.cache_dir == tmp_path / 'cache'
    assert manager.get('Logging', 'level') == 'ERROR'


def test_credentials_are_encrypted_at_rest(tmp_path):
    manager = SettingsManager(tmp_path)
    manager.set_host(Host(root_uri='https://romm.example', port=8443, username='player', password='hunter2'))

    raw = configparser.ConfigParser(interpolation=None)
    raw.read(manager.config_file)
    assert raw['RomM']['password'] != 'hunter2'
    assert raw['RomM']['username'] != 'player'

    host = SettingsManager(tmp_path).get_host()
    assert host == Host(root_uri='https://romm.example', port=8443, username='player', password='hunter2')
    assert host.url() == 'https://romm.example:8443'


def test_plaintext_credentials_are_accepted(tmp_path):
    (tmp_path / 'settings.ini').write_text('[RomM]\nurl = http://romm\nusername = admin\npassword = plain\n')
    host = SettingsManager(tmp_path).get_host()
    assert (host.username, host.password) == ('admin', 'plain')


def test_migration_adds_missing_sections(tmp_path):
    (tmp_path / 'settings.ini').write_text('[RomM]\nurl = http://romm\n')
    manager = SettingsManager(tmp_path)

    assert manager.get('RomM', 'url') == 'http://romm'
    assert manager.api_timeout == 60
    assert 'Device' in manager.config
    assert 'download_timeout' in manager.config_file.read_text()


def test_invalid_integer_falls_back(tmp_path):
    manager = SettingsManager(tmp_path)
    manager.set('Network', 'api_timeout', 'soon')
    assert manager.api_timeout == 60


def test_directory_mappings_round_trip(tmp_path):
    manager = SettingsManager(tmp_path)
    manager.set_directory_mapping('gba', DirectoryMapping(relative_path='Advance (GBA)', save_directory='mGBA'))

    mappings = SettingsManager(tmp_path).get_directory_mappings()
    assert mappings == {'gba': DirectoryMapping(relative_path='Advance (GBA)', save_directory='mGBA')}


def test_custom_cache_dir(tmp_path):
    manager = SettingsManager(tmp_path / 'cfg')
    manager.set('Cache', 'directory', str(tmp_path / 'elsewhere'))
    assert manager.cache_dir == tmp_path / 'elsewhere'


def test_config_dir_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv('ROMM_SYNC_CONFIG_DIR', str(tmp_path / 'env'))
    assert default_config_dir() == tmp_path / 'env'
    assert SettingsManager().config_file == tmp_path / 'env' / 'settings.ini'


def test_host_loggable_hides_password():
    host = Host(root_uri='http://romm', username='player', password='secret')
    assert host.to_loggable()['password'] == '******'
    assert host.url() == 'http://romm'
