import pytest

from backend import database
from backend.config import Settings, set_settings


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temp directory with no provider credentials"""
    s = Settings(
        media_dir=tmp_path / 'media',
        output_dir=tmp_path / 'uploads',
        temp_dir=tmp_path / 'temp',
        log_dir=tmp_path / 'logs',
        database_path=tmp_path / 'data' / 'content.db',
        ffmpeg_workers=1,
        job_workers=1,
        progress_grace_seconds=0.1,
    )
    s.ensure_directories()
    set_settings(s)
    database.configure(s.database_path)
    database.init_db()
    yield s
    set_settings(None)


@pytest.fixture
def content_id(settings):
    return database.create_content("TITLE: My cat saved me\nShe jumped on the stove. (true story) Then *everything* changed!")
