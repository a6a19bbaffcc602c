import logging
import os
import re
from typing import List, Optional, Union

import msal
import requests

from odindex.formatters import convert_path, encode_path, parse_date

logger = logging.getLogger(__name__)

ITEM_FIELDS = "name,id,size,lastModifiedDateTime,folder,file,parentReference"


class NotFound:
    def __repr__(self):
        return "<NotFound>"


class TransientError:
    def __init__(self, reason: str, status: Optional[int] = None):
        self.reason = reason
        self.status = status

    def __repr__(self):
        return f"<TransientError status={self.status} reason=\"{self.reason}\">"


class Item:
    is_folder = False

    def __init__(self, name, id, size, path, parent_id, mtime):
        self.name = name
        self.id = id
        self.size = size
        self.path = path
        self.parent_id = parent_id
        self.mtime = mtime

    @classmethod
    def from_request(cls, data, base_directory="/"):
        parent_ref = data.get("parentReference") or {}
        parent_path = convert_path(parent_ref["path"], base_directory) if "path" in parent_ref else None
        path = None if parent_path is None else parent_path + "/" + data["name"]

        if "folder" in data:
            inst = Folder(
                data["name"], data["id"], data.get("size", 0), path, parent_ref.get("id"),
                parse_date(data.get("lastModifiedDateTime")),
            )
            inst.child_count = data["folder"].get("childCount", 0)
        else:
            inst = File(
                data["name"], data["id"], data.get("size", 0), path, parent_ref.get("id"),
                parse_date(data.get("lastModifiedDateTime")),
            )
            inst.mimetype = (data.get("file") or {}).get("mimeType", "application/octet-stream")
            inst.download_url = data.get("@microsoft.graph.downloadUrl")

        return inst

    def to_dict(self, item_id=None) -> dict:
        data = {
            "id": item_id if item_id is not None else self.id,
            "name": self.name,
            "size": self.size,
            "lastModifiedDateTime": self.mtime.isoformat() if self.mtime else None,
        }
        if self.is_folder:
            data["folder"] = {"childCount": self.child_count}
        else:
            data["file"] = {"mimeType": self.mimetype}
        return data

    def __repr__(self):
        return f"<{type(self).__name__} path=\"{self.path}\">"


class File(Item):
    mimetype = "application/octet-stream"
    download_url = None


class Folder(Item):
    is_folder = True
    child_count = 0


class Page:
    def __init__(self, folder: Folder, items: List[Item], next_token: Optional[str] = None):
        self.folder = folder
        self.items = items
        self.next_token = next_token


def _failure(error: Exception, what: str) -> Union[NotFound, TransientError]:
    response = getattr(error, "response", None)
    status = response.status_code if response is not None else None
    if status == 404:
        return NotFound()
    logger.warning("Upstream request for %s failed: %s", what, error)
    return TransientError(str(error), status)


class Client:
    """Microsoft Graph client for a single drive.

    Paths given to the lookup methods are relative to ``base_directory``;
    every lookup returns a tagged result instead of raising on HTTP errors.
    """

    def __init__(self, scopes: List[str], client_id: str, tenant_id: str,
                 base_directory: str = "/",
                 graph_base="https://graph.microsoft.com/v1.0",
                 timeout: int = 20,
                 cache_path: str = ".token_cache.json"):

        self.scopes = scopes
        self.client_id = client_id
        self.tenant_id = tenant_id
        self.base_directory = base_directory
        self.graph_base = graph_base
        self.drive_api = f"{graph_base}/me/drive"
        self.timeout = timeout
        self.session = requests.Session()
        self._token = None

        # MSAL token cache
        self.cache_path = cache_path
        self.token_cache = msal.SerializableTokenCache()

        if os.path.exists(self.cache_path):
            with open(self.cache_path, "r") as f:
                self.token_cache.deserialize(f.read())

        self._app = None

    @property
    def app(self) -> msal.PublicClientApplication:
        # Built on first use, msal resolves the authority over the network
        if self._app is None:
            self._app = msal.PublicClientApplication(
                self.client_id,
                authority=f"https://login.microsoftonline.com/{self.tenant_id}",
                token_cache=self.token_cache
            )
        return self._app

    @property
    def authenticated(self) -> bool:
        return self._token is not None

    def _set_token(self, token):
        self._token = token
        self.session.headers.update({"Authorization": f"Bearer {token}"})

    def _save_cache(self):
        if self.token_cache.has_state_changed:
            with open(self.cache_path, "w") as f:
                f.write(self.token_cache.serialize())

    def _acquire_silent(self) -> bool:
        accounts = self.app.get_accounts()
        if not accounts:
            return False
        result = self.app.acquire_token_silent(self.scopes, account=accounts[0])
        if result and "access_token" in result:
            self._set_token(result["access_token"])
            self._save_cache()
            return True
        return False

    def devicecode_login(self):
        if self._acquire_silent():
            return

        flow = self.app.initiate_device_flow(scopes=self.scopes)
        if "user_code" not in flow:
            raise Exception("Could not start the device code flow")

        logger.warning(flow["message"])

        result = self.app.acquire_token_by_device_flow(flow)

        if "access_token" not in result:
            raise Exception("Authentication failed: %s" % result.get("error_description"))

        self._set_token(result["access_token"])
        self._save_cache()

    def _get(self, url, params=None, **kwargs) -> requests.Response:
        # msal hands back the cached token until it is close to expiry
        self._acquire_silent()
        res = self.session.get(url, params=params, timeout=self.timeout, **kwargs)
        res.raise_for_status()
        return res

    def _path_url(self, path: str) -> str:
        return f"{self.drive_api}/root{encode_path(path, self.base_directory)}"

    def get_item(self, path: str, select: str = ITEM_FIELDS) -> Union[File, Folder, NotFound, TransientError]:
        try:
            res = self._get(self._path_url(path), params={"select": select + ",@microsoft.graph.downloadUrl"})
        except requests.RequestException as e:
            return _failure(e, path)
        return Item.from_request(res.json(), self.base_directory)

    def get_item_by_id(self, item_id: str) -> Union[File, Folder, NotFound, TransientError]:
        try:
            res = self._get(f"{self.drive_api}/items/{item_id}", params={"select": ITEM_FIELDS})
        except requests.RequestException as e:
            return _failure(e, "item by id")
        return Item.from_request(res.json(), self.base_directory)

    def get_children(self, path: str, next_token: Optional[str] = None, sort: Optional[str] = None,
                     top: int = 100) -> Union[Page, File, NotFound, TransientError]:
        folder = self.get_item(path)
        if not isinstance(folder, Folder):
            return folder

        url = self._path_url(path)
        url = f"{url}{':' if encode_path(path, self.base_directory) else ''}/children"
        params = {"select": ITEM_FIELDS, "$top": top}
        if next_token:
            params["$skipToken"] = next_token
        if sort:
            params["$orderby"] = sort

        try:
            data = self._get(url, params=params).json()
        except requests.RequestException as e:
            return _failure(e, path)

        next_link = data.get("@odata.nextLink") or ""
        match = re.search(r"[&?]\$skiptoken=([^&]+)", next_link, re.IGNORECASE)
        items = [Item.from_request(item, self.base_directory) for item in data.get("value", [])]
        return Page(folder, items, match.group(1) if match else None)

    def search(self, query: str, top: int = 100) -> Union[List[Item], TransientError]:
        root = encode_path("/", self.base_directory)
        url = f"{self.drive_api}/root{root + ':' if root else ''}/search(q='{query}')"
        try:
            data = self._get(url, params={"select": ITEM_FIELDS, "top": top}).json()
        except requests.RequestException as e:
            failure = _failure(e, "search")
            return failure if isinstance(failure, TransientError) else []
        return [Item.from_request(item, self.base_directory) for item in data.get("value", [])]

    def read_text(self, path: str, max_size: Optional[int] = None) -> Union[str, NotFound, TransientError]:
        """Text content of a file; empty when it is ``max_size`` bytes or larger."""
        item = self.get_item(path, select="id,name,size,file")
        if isinstance(item, (NotFound, TransientError)):
            return item
        if item.is_folder or not item.download_url:
            return NotFound()
        if max_size is not None and item.size >= max_size:
            return ""
        try:
            res = self.session.get(item.download_url, timeout=self.timeout)
            res.raise_for_status()
        except requests.RequestException as e:
            return _failure(e, path)
        return res.content.decode("utf-8-sig")

    def get_content(self, item_id) -> Union[bytes, NotFound, TransientError]:
        try:
            res = self._get(f"{self.drive_api}/items/{item_id}/content")
        except requests.RequestException as e:
            return _failure(e, item_id)
        return res.content
