"""
Connection manager for the single live IMAP session.

IMAPClient is not safe for concurrent use, so every remote operation (page
loads, backfill fetches) goes through one asyncio.Lock and runs in a worker
thread. Recoverable failures get exactly one reconnect and one retry.
"""
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, IMAPClientAbortError, LoginError
import asyncio
import imaplib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .models import AccountSettings, FolderInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Substrings of transient network failures that surface as generic exceptions
RECOVERABLE_PATTERNS = (
    'timed out', 'timeout', 'connection reset', 'connection refused',
    'broken pipe', 'network', 'temporary', 'unavailable', 'eof',
    'socket error', 'connection closed', 'not connected',
)

STATUS_ITEMS = [b'MESSAGES', b'UNSEEN', b'UIDVALIDITY', b'UIDNEXT']


class IMAPConnectionError(Exception):
    """Base class for connection manager failures"""


class NotConnectedError(IMAPConnectionError):
    """No live session (never connected, dropped, or shut down)"""


class AuthenticationError(IMAPConnectionError):
    """Server rejected the credentials; never retried"""


class FolderNotFoundError(IMAPConnectionError):
    """Folder is not in the list returned by the last connect"""


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"


@dataclass
class SelectedFolder:
    """SELECT response for the folder an operation runs against"""
    name: str
    exists: int
    uid_validity: Optional[int] = None
    uid_next: Optional[int] = None


def is_recoverable(error: BaseException) -> bool:
    """
    Classify an exception raised by a remote operation.

    Transient I/O, protocol-level failures and stale sessions are
    recoverable; rejected credentials and unknown folders are not.
    """
    if isinstance(error, (AuthenticationError, LoginError, FolderNotFoundError)):
        return False
    if isinstance(error, (NotConnectedError, OSError, imaplib.IMAP4.abort,
                          IMAPClientAbortError, IMAPClientError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in RECOVERABLE_PATTERNS)


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)


class ConnectionManager:
    """Owns and serializes the one IMAP session of a sync session"""

    def __init__(self, timeout: int = 30):
        """
        Args:
            timeout: Network timeout in seconds passed to IMAPClient
        """
        self.timeout = timeout
        self.client: Optional[IMAPClient] = None
        self.state = ConnectionState.DISCONNECTED
        self.account: Optional[AccountSettings] = None
        self.folders: Dict[str, FolderInfo] = {}
        self._password: Optional[str] = None
        self._lock = asyncio.Lock()
        self._closed = False
        self._reconnect_listeners: List[Callable[[], None]] = []

    def add_reconnect_listener(self, listener: Callable[[], None]) -> None:
        """Register a callback run after every (re)connect, e.g. to drop cursors."""
        self._reconnect_listeners.append(listener)

    @property
    def is_ready(self) -> bool:
        return self.state == ConnectionState.READY and self.client is not None

    async def _in_thread(self, func: Callable[..., T], *args) -> T:
        # Keep holding the lock until the worker thread is done, even if the
        # awaiting task is cancelled, so two threads never share the client.
        future = asyncio.ensure_future(asyncio.to_thread(func, *args))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            await asyncio.wait([future])
            raise

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def connect(self, account: AccountSettings, password: str) -> List[FolderInfo]:
        """
        Connect, authenticate and list folders.

        Returns:
            Folders with INBOX first

        Raises:
            AuthenticationError: Credentials rejected
            Exception: Any network/protocol error from the connect attempt
        """
        self.account = account
        self._password = password
        self._closed = False
        async with self._lock:
            folders = await self._in_thread(self._connect_blocking)
        self._notify_reconnect()
        return folders

    async def reconnect(self) -> List[FolderInfo]:
        if self._closed:
            raise NotConnectedError("Connection manager is shut down")
        if self.account is None or self._password is None:
            raise NotConnectedError("No account configured")
        logger.warning(f"Reconnecting to IMAP server {self.account.server}")
        async with self._lock:
            folders = await self._in_thread(self._connect_blocking)
        self._notify_reconnect()
        return folders

    def _notify_reconnect(self) -> None:
        for listener in self._reconnect_listeners:
            try:
                listener()
            except Exception as e:
                logger.error(f"Reconnect listener failed: {e}")

    def _connect_blocking(self) -> List[FolderInfo]:
        account = self.account
        self._logout_quietly()
        self.state = ConnectionState.CONNECTING
        logger.info(f"Connecting to IMAP server {account.server}:{account.port} (timeout: {self.timeout}s)")

        try:
            client = IMAPClient(
                host=account.server,
                port=account.port,
                ssl=account.use_ssl,
                timeout=self.timeout,
            )
        except Exception:
            self.state = ConnectionState.DISCONNECTED
            raise

        try:
            client.login(account.username, self._password)
        except LoginError as e:
            self.state = ConnectionState.DISCONNECTED
            self._logout_client_quietly(client)
            raise AuthenticationError(f"Authentication failed for {account.username}: {e}") from e
        except Exception:
            self.state = ConnectionState.DISCONNECTED
            self._logout_client_quietly(client)
            raise

        logger.info(f"Successfully logged in as {account.username}")
        self.client = client

        try:
            folders = self._list_folders_blocking(client)
        except Exception:
            self.state = ConnectionState.DISCONNECTED
            raise

        self.folders = {folder.full_name: folder for folder in folders}
        self.state = ConnectionState.READY
        logger.info(f"Found {len(folders)} folder(s)")
        return folders

    def _list_folders_blocking(self, client: IMAPClient) -> List[FolderInfo]:
        folders: List[FolderInfo] = []
        for flags, delimiter, name in client.list_folders():
            flag_names = [_decode(flag) for flag in flags]
            if any(flag.lower() in ('\\noselect', '\\nonexistent') for flag in flag_names):
                continue

            name = _decode(name)
            delim = _decode(delimiter) if delimiter else ''
            display_name = name.rsplit(delim, 1)[-1] if delim else name

            info = FolderInfo(full_name=name, display_name=display_name, flags=flag_names)
            try:
                status = client.folder_status(name, STATUS_ITEMS)
                info.message_count = status.get(b'MESSAGES', 0)
                info.unread_count = status.get(b'UNSEEN', 0)
                info.uid_validity = status.get(b'UIDVALIDITY')
                info.uid_next = status.get(b'UIDNEXT')
            except IMAPClientAbortError:
                raise
            except IMAPClientError as e:
                logger.warning(f"STATUS failed for folder '{name}': {e}")
            folders.append(info)

        # INBOX first, everything else in server order
        folders.sort(key=lambda f: 0 if f.is_inbox else 1)
        return folders

    def _logout_client_quietly(self, client: IMAPClient) -> None:
        try:
            client.logout()
        except Exception:
            pass

    def _logout_quietly(self) -> None:
        if self.client is not None:
            self._logout_client_quietly(self.client)
        self.client = None
        self.state = ConnectionState.DISCONNECTED

    async def disconnect(self) -> None:
        """Log out and refuse further operations. Waits for any in-flight operation."""
        self._closed = True
        async with self._lock:
            await self._in_thread(self._logout_quietly)
        logger.info("Disconnected from IMAP server")

    # ------------------------------------------------------------------
    # Exclusive operations
    # ------------------------------------------------------------------

    def _run_blocking(self, folder: Optional[str],
                      operation: Callable[[IMAPClient, Optional[SelectedFolder]], T]) -> T:
        client = self.client
        if self._closed or client is None or self.state != ConnectionState.READY:
            raise NotConnectedError("IMAP session is not connected")

        if folder is None:
            return operation(client, None)

        if folder not in self.folders:
            raise FolderNotFoundError(f"Folder could not be found on the server: {folder}")

        response = client.select_folder(folder, readonly=True)
        selected = SelectedFolder(
            name=folder,
            exists=int(response.get(b'EXISTS', 0)),
            uid_validity=response.get(b'UIDVALIDITY'),
            uid_next=response.get(b'UIDNEXT'),
        )
        try:
            return operation(client, selected)
        finally:
            try:
                client.close_folder()
            except Exception as e:
                logger.debug(f"Ignoring error closing folder '{folder}': {e}")

    async def run_exclusive(self, folder: Optional[str],
                            operation: Callable[[IMAPClient, Optional[SelectedFolder]], T]) -> T:
        """
        Run a blocking operation against the session with exclusive access.

        The folder (if given) is opened read-only before the operation and
        closed afterwards; close failures are swallowed.

        Args:
            folder: Full folder name, or None for session-level commands
            operation: Callable receiving the client and the SELECT result

        Returns:
            Whatever the operation returns
        """
        async with self._lock:
            try:
                return await self._in_thread(self._run_blocking, folder, operation)
            except Exception as e:
                if is_recoverable(e) and not isinstance(e, NotConnectedError):
                    self.state = ConnectionState.DISCONNECTED
                raise

    async def call(self, folder: Optional[str],
                   operation: Callable[[IMAPClient, Optional[SelectedFolder]], T]) -> T:
        """
        run_exclusive with one reconnect-and-retry on a recoverable error.
        """
        try:
            return await self.run_exclusive(folder, operation)
        except Exception as e:
            if self._closed or not is_recoverable(e):
                raise
            logger.warning(f"IMAP operation failed ({type(e).__name__}: {e}), reconnecting once")

        await self.reconnect()
        return await self.run_exclusive(folder, operation)
