import re
from functools import partial
from typing import Any, Dict, Iterator, Optional, Sequence, Set, Tuple

from m365_crawler.errors import CrawlingAccessError, MalformedEntityError
from m365_crawler.runtime_logger import emit
from m365_crawler.stats import StatsAction, StatsKey


DEFAULT_MIMETYPE = "application/octet-stream"


class DriveCrawler:
    """Crawls OneDrive / document library files into minimal documents.

    Targets are one drive, every drive of a site, and/or every user's
    OneDrive. Folder trees are walked with an explicit stack of nested
    pagination walks; each file becomes one work item.
    """

    name = "drive"

    def __init__(
        self,
        *,
        drive_id: Optional[str] = None,
        site_id: Optional[str] = None,
        user_drives: bool = False,
        ignore_folder: bool = True,
        supported_mimetypes: Sequence[str] = (".*",),
        include_pattern: Optional[str] = None,
        exclude_pattern: Optional[str] = None,
        max_content_length: int = -1,
    ):
        if not drive_id and not site_id and not user_drives:
            raise ValueError("drive_id, site_id or user_drives is required")
        self.drive_id = drive_id
        self.site_id = site_id
        self.user_drives = user_drives
        self.ignore_folder = ignore_folder
        self._mimetypes = [re.compile(p) for p in supported_mimetypes]
        self._include = re.compile(include_pattern) if include_pattern else None
        self._exclude = re.compile(exclude_pattern) if exclude_pattern else None
        self.max_content_length = max_content_length

    def url_allowed(self, url: str) -> bool:
        """Include and exclude patterns must match the whole url; exclude wins."""
        if self._include is not None and not self._include.fullmatch(url):
            return False
        if self._exclude is not None and self._exclude.fullmatch(url):
            return False
        return True

    def crawl(self, session):
        drives = 0
        for drive, inherited_roles in self._target_drives(session):
            drives += 1
            self._crawl_drive(session, drive, inherited_roles)
        emit("INFO", "CRAWLER", f"Drive enumeration finished: session_id={session.session_id} drives={drives}")

    def _target_drives(self, session) -> Iterator[Tuple[Dict[str, Any], Set[str]]]:
        client = session.client
        if self.drive_id:
            drive = client.get_drive(self.drive_id)
            if drive is None:
                emit("WARN", "CRAWLER", f"Drive not found: drive_id={self.drive_id}")
            else:
                yield drive, self._owner_roles(session, drive)

        if self.site_id:
            for drive in client.iter_site_drives(self.site_id):
                yield drive, self._owner_roles(session, drive)

        if self.user_drives:
            for user in client.iter_users():
                user_id = user.get("id")
                if not user_id:
                    continue
                drive = client.get_user_drive(user_id)
                if drive is None:
                    emit("DEBUG", "CRAWLER", f"User has no drive: user_id={user_id}")
                    continue
                yield drive, self._owner_roles(session, drive)

    def _owner_roles(self, session, drive: Dict[str, Any]) -> Set[str]:
        owner = drive.get("owner") or {}
        user = owner.get("user") or {}
        group = owner.get("group") or {}
        if user.get("id"):
            return session.mapper.map_principal_id(user["id"])
        if group.get("email"):
            return session.mapper.map_email(group["email"])
        return set()

    def _crawl_drive(self, session, drive: Dict[str, Any], inherited_roles: Set[str]):
        drive_id = drive.get("id")
        if not drive_id:
            emit("WARN", "CRAWLER", f"Drive without id skipped: web_url={drive.get('webUrl')}")
            return

        submitted = 0
        folders: list = [None]
        while folders:
            if session.cancelled:
                emit("WARN", "CRAWLER", f"Drive walk stopped, session cancelled: drive_id={drive_id}")
                return
            folder_id = folders.pop()
            for item in session.client.iter_drive_children(drive_id, folder_id):
                if "folder" in item:
                    if item.get("id"):
                        folders.append(item["id"])
                    if self.ignore_folder:
                        continue
                session.submit(
                    item.get("webUrl") or "",
                    partial(self._process_item, session, drive_id, item, inherited_roles),
                    payload=item,
                )
                submitted += 1
        emit("INFO", "CRAWLER", f"Drive walked: drive_id={drive_id} name={drive.get('name')} submitted={submitted}")

    def _process_item(
        self,
        session,
        drive_id: str,
        item: Dict[str, Any],
        inherited_roles: Set[str],
        key: StatsKey,
    ) -> Optional[Dict[str, Any]]:
        item_id = item.get("id")
        if not item_id:
            raise MalformedEntityError("driveItem", "id")
        web_url = item.get("webUrl")
        if not web_url:
            raise MalformedEntityError("driveItem", "webUrl")

        mimetype = (item.get("file") or {}).get("mimeType") or DEFAULT_MIMETYPE
        if not any(p.match(mimetype) for p in self._mimetypes):
            emit("DEBUG", "CRAWLER", f"Mimetype not supported: url={web_url} mimetype={mimetype}")
            return None
        if not self.url_allowed(web_url):
            emit("DEBUG", "CRAWLER", f"URL filter rejected item: url={web_url}")
            return None

        size = item.get("size")
        if self.max_content_length >= 0 and isinstance(size, int) and size > self.max_content_length:
            raise CrawlingAccessError(
                f"The content length ({size} byte) is over {self.max_content_length} byte. The url is {web_url}"
            )

        emit("INFO", "CRAWLER", f"Crawling drive item: url={web_url} name={item.get('name')} size={size} mimetype={mimetype}")
        roles = session.resource_roles(
            session.client.iter_drive_item_permissions(drive_id, item_id),
            inherited_roles=inherited_roles,
            resource=web_url,
        )
        session.stats.record(key, StatsAction.PREPARED)

        content = ""
        if session.extractor is not None and "folder" not in item:
            data = session.client.get_drive_item_content(drive_id, item_id)
            if data is None:
                emit("INFO", "CRAWLER", f"Drive item content gone, skipped: url={web_url}")
                return None
            try:
                content = session.extractor.extract(data, item.get("name"))
            except Exception as exc:
                raise CrawlingAccessError(f"Could not extract text: {web_url}") from exc

        parent = item.get("parentReference") or {}
        document = {
            "url": web_url,
            "title": item.get("name"),
            "content": content,
            "mimetype": mimetype,
            "content_length": size,
            "created": item.get("createdDateTime"),
            "last_modified": item.get("lastModifiedDateTime"),
            "drive_id": drive_id,
            "item_id": item_id,
            "parent_path": parent.get("path"),
            "role": sorted(roles),
        }
        session.stats.record(key, StatsAction.EVALUATED)
        return document
