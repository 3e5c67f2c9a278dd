"""
Tests for session auth backups and the Celery maintenance sweeps.
"""
import json
from datetime import datetime

from sqlmodel import select

from wacrm.core.config import settings
from wacrm.models.message import Message
from wacrm.models.session_backup import SessionBackup
from wacrm.services.session_backup_service import SessionBackupService
from wacrm.tasks import maintenance_tasks


def _write_auth(auth_dir, session_id="default"):
    directory = auth_dir / session_id
    (directory / "keys").mkdir(parents=True)
    (directory / "creds.json").write_text(json.dumps({"me": {"id": "6281234567890:1@s.whatsapp.net"}}))
    (directory / "keys" / "pre-key-1.json").write_bytes(b"\x00\x01secret")
    return directory


# ---------------------------------------------------------------------------
# Backup service
# ---------------------------------------------------------------------------

class TestSessionBackupService:

    def test_backup_and_restore(self, tmp_path, session_factory, session):
        auth_dir = tmp_path / "auth"
        _write_auth(auth_dir)
        service = SessionBackupService(session_factory, auth_dir=str(auth_dir), enabled=True)

        assert service.backup("default") is True
        record = session.exec(select(SessionBackup)).one()
        assert record.file_count == 2
        assert "secret" not in record.session_data

        restore_dir = tmp_path / "restored"
        restorer = SessionBackupService(session_factory, auth_dir=str(restore_dir), enabled=True)
        assert restorer.restore("default") is True
        assert (restore_dir / "default" / "keys" / "pre-key-1.json").read_bytes() == b"\x00\x01secret"
        assert json.loads((restore_dir / "default" / "creds.json").read_text())["me"]["id"].startswith("628")

    def test_restore_keeps_existing_files(self, tmp_path, session_factory):
        auth_dir = tmp_path / "auth"
        directory = _write_auth(auth_dir)
        service = SessionBackupService(session_factory, auth_dir=str(auth_dir), enabled=True)
        service.backup("default")

        (directory / "creds.json").write_text("{}")
        assert service.restore("default") is False
        assert (directory / "creds.json").read_text() == "{}"

        assert service.restore("default", overwrite=True) is True
        assert (directory / "creds.json").read_text() != "{}"

    def test_backup_updates_single_record(self, tmp_path, session_factory, session):
        auth_dir = tmp_path / "auth"
        directory = _write_auth(auth_dir)
        service = SessionBackupService(session_factory, auth_dir=str(auth_dir), enabled=True)
        service.backup("default")
        (directory / "app-state.json").write_text("{}")
        service.backup("default")

        session.expire_all()
        records = session.exec(select(SessionBackup)).all()
        assert len(records) == 1
        assert records[0].file_count == 3

    def test_disabled_or_missing(self, tmp_path, session_factory):
        disabled = SessionBackupService(session_factory, auth_dir=str(tmp_path), enabled=False)
        assert disabled.backup("default") is False
        assert disabled.restore("default") is False

        enabled = SessionBackupService(session_factory, auth_dir=str(tmp_path), enabled=True)
        assert enabled.backup("nothing-here") is False
        assert enabled.restore("nothing-here") is False

    def test_delete_and_list(self, tmp_path, session_factory):
        auth_dir = tmp_path / "auth"
        _write_auth(auth_dir)
        service = SessionBackupService(session_factory, auth_dir=str(auth_dir), enabled=True)
        service.backup("default")

        backups = service.list_backups()
        assert [b["session_id"] for b in backups] == ["default"]
        assert service.delete("default") is True
        assert service.delete("default") is False
        assert service.list_backups() == []


# ---------------------------------------------------------------------------
# Celery sweeps
# ---------------------------------------------------------------------------

class TestMaintenanceTasks:

    def test_media_sweep_saves_pending(self, monkeypatch, tmp_path, session, session_factory, gateway):
        monkeypatch.setattr(maintenance_tasks, "_session_factory", session_factory)
        monkeypatch.setattr(maintenance_tasks, "WhatsAppGateway", lambda: gateway)
        monkeypatch.setattr(settings, "MEDIA_DIR", str(tmp_path / "media"))

        raw = {"key": {"id": "IMG9", "remoteJid": "6281234567890@s.whatsapp.net"}, "message": {"imageMessage": {}}}
        session.add(Message(
            session_id="default",
            message_id="IMG9",
            message_type="image",
            raw_message=json.dumps(raw),
            timestamp=datetime(2024, 1, 1),
        ))
        session.add(Message(session_id="default", message_id="TXT1", content="halo"))
        session.commit()

        result = maintenance_tasks.materialize_pending_media(limit=10)

        assert result == {"pending": 1, "saved": 1}
        assert (tmp_path / "media" / "IMG9.png").read_bytes() == b"\x89PNG fake media"
        session.expire_all()
        stored = session.exec(select(Message).where(Message.message_id == "IMG9")).one()
        assert stored.media_url == "IMG9.png"

    def test_media_sweep_nothing_pending(self, monkeypatch, session_factory, gateway):
        monkeypatch.setattr(maintenance_tasks, "_session_factory", session_factory)
        monkeypatch.setattr(maintenance_tasks, "WhatsAppGateway", lambda: gateway)

        assert maintenance_tasks.materialize_pending_media() == {"pending": 0, "saved": 0}

    def test_backup_sweep(self, monkeypatch, tmp_path, session, session_factory):
        auth_dir = tmp_path / "auth"
        _write_auth(auth_dir, "default")
        _write_auth(auth_dir, "sales")
        monkeypatch.setattr(maintenance_tasks, "_session_factory", session_factory)
        monkeypatch.setattr(settings, "AUTH_DIR", str(auth_dir))
        monkeypatch.setattr(settings, "SESSION_BACKUP_ENABLED", True)

        result = maintenance_tasks.backup_all_sessions()

        assert result == {"enabled": True, "backed_up": 2, "sessions": ["default", "sales"]}
        assert len(session.exec(select(SessionBackup)).all()) == 2

    def test_backup_sweep_disabled(self, monkeypatch, session_factory):
        monkeypatch.setattr(maintenance_tasks, "_session_factory", session_factory)
        monkeypatch.setattr(settings, "SESSION_BACKUP_ENABLED", False)

        assert maintenance_tasks.backup_all_sessions() == {"enabled": False, "backed_up": 0}
