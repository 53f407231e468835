"""Client for interacting with the RomM API"""

import logging
import os
from pathlib import Path
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .connection import (
    DECISIVE_KINDS,
    classify_transport_error,
    probe_other_protocol,
    scheme_of,
)
from .constants import APP_NAME, APP_VERSION, DEFAULT_BUFFER_SIZE, DEFAULT_HTTP_TIMEOUT
from .errors import (
    AuthError,
    ConnectionErrorKind,
    DownloadError,
    ProtocolError,
    RomMConnectionError,
)
from .models import Firmware, Platform, RemoteSave, Rom

ENDPOINT_HEARTBEAT = '/api/heartbeat'
ENDPOINT_LOGIN = '/api/login'
ENDPOINT_PLATFORMS = '/api/platforms'
ENDPOINT_ROMS = '/api/roms'
ENDPOINT_ROM_CONTENT = '/api/roms/{rom_id}/content/{file_name}'
ENDPOINT_FIRMWARE = '/api/firmware'
ENDPOINT_FIRMWARE_CONTENT = '/api/firmware/{firmware_id}/content/{file_name}'
ENDPOINT_SAVES = '/api/saves'
ENDPOINT_SAVE_CONTENT = '/api/saves/{save_id}/content'


def _status_error(response, context):
    """Build the exception for a non-2xx response, or None for success"""
    status = response.status_code
    if 200 <= status < 300:
        return None
    if status == 401:
        return AuthError("Invalid username or password", ConnectionErrorKind.UNAUTHORIZED, status)
    if status == 403:
        return AuthError("Access forbidden", ConnectionErrorKind.FORBIDDEN, status)
    if status >= 500:
        return AuthError(f"Server error during {context}", ConnectionErrorKind.SERVER_ERROR, status)
    return RomMConnectionError(f"{context} failed with status: {status}", ConnectionErrorKind.UNCLASSIFIED, status)


class RomMClient:
    """Client for interacting with RomM API"""

    def __init__(self, base_url, username='', password='', timeout=DEFAULT_HTTP_TIMEOUT, retries=2):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = requests.Session()

        adapter = HTTPAdapter(
            pool_connections=4,
            pool_maxsize=8,
            max_retries=Retry(total=retries, backoff_factor=0.3, allowed_methods=frozenset({'GET'})),
        )
        self.session.mount('http://', adapter)
        self.session.mount('https://', adapter)

        self.session.headers.update({
            'Accept-Encoding': 'gzip, deflate',
            'Accept': 'application/json',
            'User-Agent': f'{APP_NAME}/{APP_VERSION}',
        })

        if username:
            self.session.auth = (username, password)

    def _url(self, path):
        return self.base_url + path

    def _request(self, method, path, timeout=None, **kwargs):
        """Send a request; transport failures and bad statuses become RomMConnectionError"""
        context = f"{method} {path}"
        try:
            response = self.session.request(method, self._url(path), timeout=timeout or self.timeout, **kwargs)
        except requests.RequestException as e:
            raise RomMConnectionError(f"{context} failed: {e}", classify_transport_error(e)) from e

        error = _status_error(response, context)
        if error is not None:
            response.close()
            raise error
        return response

    def _get_json(self, path, params=None):
        response = self._request('GET', path, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise RomMConnectionError(f"GET {path} returned invalid JSON") from e
        finally:
            response.close()

    # Connection checks

    def validate_connection(self):
        """Cheap unauthenticated heartbeat, used before anything else on startup"""
        url = self._url(ENDPOINT_HEARTBEAT)
        requested = scheme_of(url)

        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            kind = classify_transport_error(e)
            if kind not in DECISIVE_KINDS:
                correct = probe_other_protocol(self.session, self.base_url, ENDPOINT_HEARTBEAT, self.timeout)
                if correct:
                    raise ProtocolError(requested, correct) from e
            raise RomMConnectionError(f"failed to connect: {e}", kind) from e

        try:
            # Server redirected us to the other scheme
            final_scheme = scheme_of(response.url or url)
            if final_scheme and final_scheme != requested:
                raise ProtocolError(requested, final_scheme)

            status = response.status_code
            if 200 <= status < 300:
                return
            if status in (401, 403) or status >= 500:
                raise _status_error(response, 'heartbeat check')
        finally:
            response.close()

        correct = probe_other_protocol(self.session, self.base_url, ENDPOINT_HEARTBEAT, self.timeout)
        if correct:
            raise ProtocolError(requested, correct)
        raise RomMConnectionError(f"heartbeat check failed with status: {status}", ConnectionErrorKind.UNCLASSIFIED, status)

    def login(self, username, password):
        """Exchange credentials with the server (basic auth against /api/login)"""
        url = self._url(ENDPOINT_LOGIN)
        requested = scheme_of(url)
        auth = (username, password)

        try:
            response = self.session.post(url, auth=auth, timeout=self.timeout)
        except requests.RequestException as e:
            kind = classify_transport_error(e)
            if kind not in DECISIVE_KINDS:
                correct = probe_other_protocol(self.session, self.base_url, ENDPOINT_LOGIN, self.timeout,
                                               method='POST', auth=auth)
                if correct:
                    raise ProtocolError(requested, correct) from e
            raise RomMConnectionError(f"failed to login: {e}", kind) from e

        status = response.status_code
        response.close()

        if 200 <= status < 300:
            logging.info("✅ Login successful")
            return

        if status == 405:
            # http->https redirects turn POST into GET, which /api/login rejects
            correct = probe_other_protocol(
                self.session, self.base_url, ENDPOINT_LOGIN, self.timeout,
                method='POST', auth=auth, accept=lambda code: code != 405 and code < 500,
            )
            if correct:
                raise ProtocolError(requested, correct)
            raise RomMConnectionError(f"login failed with status: {status}", ConnectionErrorKind.UNCLASSIFIED, status)

        error = _status_error(response, 'login')
        if error.kind == ConnectionErrorKind.UNCLASSIFIED:
            correct = probe_other_protocol(self.session, self.base_url, ENDPOINT_LOGIN, self.timeout,
                                           method='POST', auth=auth)
            if correct:
                raise ProtocolError(requested, correct)
        raise error

    # Catalog

    def get_platforms(self):
        """Get list of all platforms from RomM"""
        return [Platform.from_dict(p) for p in self._get_json(ENDPOINT_PLATFORMS)]

    def get_roms(self, platform_id, page=1, limit=50, order_by=None, order_dir=None):
        """Get one page of ROMs for a platform.

        Returns ``(roms, total)`` where ``total`` is the server's count for the
        whole platform, not just this page.
        """
        params = {
            'platform_id': platform_id,
            'limit': limit,
            'offset': (max(page, 1) - 1) * limit,
        }
        if order_by:
            params['order_by'] = order_by
            params['order_dir'] = order_dir or 'asc'

        data = self._get_json(ENDPOINT_ROMS, params=params)
        if isinstance(data, list):
            items, total = data, len(data)
        else:
            items, total = data.get('items', []), data.get('total', 0)
        return [Rom.from_dict(r) for r in items], total

    def get_firmware(self, platform_id):
        """Get available BIOS files for a platform"""
        data = self._get_json(ENDPOINT_FIRMWARE, params={'platform_id': platform_id})
        return [Firmware.from_dict(f) for f in data]

    def get_saves(self, rom_id):
        data = self._get_json(ENDPOINT_SAVES, params={'rom_id': rom_id})
        if isinstance(data, dict):
            data = data.get('items', [])
        return [RemoteSave.from_dict(s) for s in data]

    # Transfers

    def download_file(self, path, destination, timeout=None, progress_callback=None):
        """Stream ``path`` into ``destination``.

        Data goes to ``<destination>.part`` and is moved into place only once
        complete, so a failed download leaves any existing file untouched.
        """
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        part = destination.with_name(destination.name + '.part')

        try:
            response = self._request('GET', path, timeout=timeout, stream=True)
        except RomMConnectionError as e:
            raise DownloadError(f"Download of {destination.name} failed: {e}") from e

        downloaded = 0
        try:
            content_type = response.headers.get('content-type', '').lower()
            if 'text/html' in content_type:
                raise DownloadError(f"Server returned an HTML page instead of {destination.name}")

            total_size = int(response.headers.get('content-length', 0) or 0)
            with open(part, 'wb') as f:
                for chunk in response.iter_content(chunk_size=DEFAULT_BUFFER_SIZE):
                    if not chunk:
                        continue
                    f.write(chunk)
                    downloaded += len(chunk)
                    if progress_callback:
                        progress_callback(downloaded, total_size)
            os.replace(part, destination)
        except (requests.RequestException, OSError, DownloadError) as e:
            self._remove_partial(part)
            if isinstance(e, DownloadError):
                raise
            raise DownloadError(f"Download of {destination.name} failed: {e}") from e
        finally:
            response.close()

        logging.debug(f"Downloaded {destination.name} ({downloaded} bytes)")
        return destination

    @staticmethod
    def _remove_partial(destination):
        try:
            destination.unlink()
            logging.debug(f"Removed partial download {destination}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logging.warning(f"Could not remove partial download {destination}: {e}")

    def download_rom(self, rom, directory, timeout=None, progress_callback=None):
        if not rom.files:
            raise DownloadError(f"ROM {rom.name} has no files to download")
        file_name = rom.files[0].get('file_name') or rom.fs_name
        path = ENDPOINT_ROM_CONTENT.format(rom_id=rom.id, file_name=quote(file_name))
        return self.download_file(path, Path(directory) / file_name, timeout=timeout,
                                  progress_callback=progress_callback)

    def download_firmware(self, firmware, destination, timeout=None):
        path = firmware.download_url or ENDPOINT_FIRMWARE_CONTENT.format(
            firmware_id=firmware.id, file_name=quote(firmware.file_name))
        return self.download_file(path, destination, timeout=timeout)

    def download_save(self, save, destination, timeout=None):
        path = ENDPOINT_SAVE_CONTENT.format(save_id=save.id)
        return self.download_file(path, destination, timeout=timeout)

    def upload_save(self, rom_id, file_path, emulator=''):
        """Upload a save file and return the server's record for it"""
        file_path = Path(file_path)
        params = {'rom_id': rom_id}
        if emulator:
            params['emulator'] = emulator

        logging.debug(f"Uploading {file_path.name} ({file_path.stat().st_size} bytes) to ROM {rom_id}")
        with open(file_path, 'rb') as f:
            files = {'saveFile': (file_path.name, f, 'application/octet-stream')}
            response = self._request('POST', ENDPOINT_SAVES, params=params, files=files)

        try:
            data = response.json()
        except ValueError:
            logging.debug(f"Upload accepted but response not parseable: {response.text[:200]}")
            data = {'rom_id': rom_id, 'file_name': file_path.name}
        finally:
            response.close()
        return RemoteSave.from_dict(data)


def get_romm_client(host, timeout, retries=2):
    return RomMClient(host.url(), host.username, host.password, timeout=timeout, retries=retries)
