"""
SFTP Archive Upload

Optional off-box copy of archived report files. Uses SSH key authentication
and retries each upload with exponential backoff. Uploads run in a worker
thread so the event loop is never blocked by paramiko.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Iterable, Optional, Tuple

import paramiko
from paramiko import SFTPClient, SSHClient

from utils.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class SftpUploader:
    """Uploads local files to `SFTP_REMOTE_BASE/<subdir>` on the configured host."""

    def __init__(self, config: Optional[Settings] = None, retries: int = 2) -> None:
        self.config = config or default_settings
        self.retries = retries

    @property
    def enabled(self) -> bool:
        return bool(self.config.SFTP_HOST and self.config.SFTP_USERNAME)

    def connect(self) -> Tuple[SSHClient, SFTPClient]:
        """Open an SSH connection and SFTP channel.

        Raises:
            ValueError: If SFTP is not configured or the key needs a passphrase
            FileNotFoundError: If the private key file is missing
            IOError: If the connection cannot be established
        """
        cfg = self.config
        if not self.enabled:
            raise ValueError("SFTP_HOST/SFTP_USERNAME are not configured")

        key_path = Path(cfg.SFTP_KEY_PATH)
        if not key_path.exists():
            raise FileNotFoundError(f"SSH key file not found: {key_path}")
        try:
            private_key = paramiko.RSAKey.from_private_key_file(
                str(key_path), password=cfg.SFTP_KEY_PASSPHRASE or None
            )
        except paramiko.PasswordRequiredException:
            raise ValueError("SSH key requires passphrase but SFTP_KEY_PASSPHRASE not set")

        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh_client.connect(
                hostname=cfg.SFTP_HOST,
                port=cfg.SFTP_PORT,
                username=cfg.SFTP_USERNAME,
                pkey=private_key,
                timeout=cfg.SFTP_TIMEOUT,
                auth_timeout=cfg.SFTP_TIMEOUT,
            )
            return ssh_client, ssh_client.open_sftp()
        except Exception as e:
            ssh_client.close()
            raise IOError(f"Failed to establish SFTP connection: {e}") from e

    def upload(self, local_path: Path | str, subdir: str = "") -> str:
        """Upload one file, verifying the remote size.

        Returns:
            Remote path of the uploaded file

        Raises:
            IOError: If the upload fails after all retries
        """
        local_file = Path(local_path)
        if not local_file.is_file():
            raise FileNotFoundError(f"Local file not found: {local_file}")

        remote_dir = "/".join(p.strip("/") for p in (self.config.SFTP_REMOTE_BASE, subdir) if p.strip("/"))
        remote_dir = "/" + remote_dir
        remote_path = f"{remote_dir.rstrip('/')}/{local_file.name}"

        last_error: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            ssh_client = sftp_client = None
            try:
                ssh_client, sftp_client = self.connect()
                _ensure_remote_dir(sftp_client, remote_dir)
                sftp_client.put(str(local_file), remote_path)
                if sftp_client.stat(remote_path).st_size != local_file.stat().st_size:
                    raise IOError("Upload verification failed: size mismatch")
                logger.info("Uploaded to SFTP", extra={"remote_path": remote_path})
                return remote_path
            except (OSError, paramiko.SSHException) as e:
                last_error = e
                if attempt < self.retries:
                    wait_time = 2 ** attempt
                    logger.warning(
                        "SFTP upload failed (attempt %d/%d), retrying in %ds: %s",
                        attempt + 1, self.retries + 1, wait_time, e,
                    )
                    time.sleep(wait_time)
            finally:
                if sftp_client is not None:
                    sftp_client.close()
                if ssh_client is not None:
                    ssh_client.close()

        raise IOError(f"SFTP upload failed after {self.retries + 1} attempts: {last_error}") from last_error

    async def upload_many(self, paths: Iterable[Path | str], subdir: str = "") -> list[str]:
        """Upload files off the event loop. Failures are logged and skipped."""
        uploaded: list[str] = []
        if not self.enabled:
            return uploaded
        for path in paths:
            try:
                uploaded.append(await asyncio.to_thread(self.upload, path, subdir))
            except (OSError, ValueError, paramiko.SSHException) as e:
                logger.error("Archive upload failed", extra={"path": str(path), "error": str(e)})
        return uploaded


def _ensure_remote_dir(sftp_client: SFTPClient, remote_dir: str) -> None:
    """Create `remote_dir` and its parents if missing."""
    remote_dir = remote_dir.rstrip("/")
    if not remote_dir:
        return
    try:
        sftp_client.stat(remote_dir)
        return
    except FileNotFoundError:
        pass

    parent_dir = str(Path(remote_dir).parent)
    if parent_dir not in ("/", remote_dir):
        _ensure_remote_dir(sftp_client, parent_dir)

    try:
        sftp_client.mkdir(remote_dir)
    except IOError as e:
        try:
            sftp_client.stat(remote_dir)
        except FileNotFoundError:
            raise IOError(f"Failed to create remote directory {remote_dir}: {e}") from e
