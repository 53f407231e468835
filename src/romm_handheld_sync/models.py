"""Plain data records returned by the RomM API"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import List, Optional


def parse_timestamp(value) -> Optional[datetime.datetime]:
    """Parse a RomM ISO 8601 timestamp into an aware UTC datetime"""
    if not value:
        return None
    if isinstance(value, datetime.datetime):
        dt = value
    else:
        text = str(value)
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            dt = datetime.datetime.fromisoformat(text)
        except ValueError:
            logging.debug(f"Failed to parse timestamp '{value}'")
            return None

    # Naive values from the server are UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt


def format_timestamp(value):
    return value.isoformat() if value else None


@dataclass
class Platform:
    id: int
    slug: str
    name: str = ''
    fs_slug: str = ''

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=data.get('id', 0),
            slug=data.get('slug', ''),
            name=data.get('display_name') or data.get('name', ''),
            fs_slug=data.get('fs_slug') or data.get('slug', ''),
        )


@dataclass
class Rom:
    id: int
    name: str
    fs_name: str = ''
    platform_id: int = 0
    platform_slug: str = ''
    files: List[dict] = field(default_factory=list)
    updated_at: Optional[datetime.datetime] = None
    multi: bool = False

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=data.get('id', 0),
            name=data.get('name') or data.get('fs_name', ''),
            fs_name=data.get('fs_name', ''),
            platform_id=data.get('platform_id', 0),
            platform_slug=data.get('platform_slug', ''),
            files=data.get('files') or [],
            updated_at=parse_timestamp(data.get('updated_at')),
            multi=data.get('multi', False),
        )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'fs_name': self.fs_name,
            'platform_id': self.platform_id,
            'platform_slug': self.platform_slug,
            'files': self.files,
            'updated_at': format_timestamp(self.updated_at),
            'multi': self.multi,
        }


@dataclass
class Firmware:
    id: int
    file_name: str
    file_path: str = ''
    file_size_bytes: int = 0
    md5_hash: str = ''
    download_url: str = ''

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=data.get('id', 0),
            file_name=data.get('file_name', ''),
            file_path=data.get('file_path', ''),
            file_size_bytes=data.get('file_size_bytes', 0),
            md5_hash=data.get('md5_hash', ''),
            download_url=data.get('download_url', ''),
        )


@dataclass
class RemoteSave:
    """A save file as stored on the server"""
    id: int
    rom_id: int
    file_name: str
    updated_at: Optional[datetime.datetime] = None
    emulator: str = ''
    download_path: str = ''
    file_size_bytes: int = 0

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=data.get('id', 0),
            rom_id=data.get('rom_id', 0),
            file_name=data.get('file_name', ''),
            updated_at=parse_timestamp(data.get('updated_at')),
            emulator=data.get('emulator') or '',
            download_path=data.get('download_path', ''),
            file_size_bytes=data.get('file_size_bytes', 0),
        )
