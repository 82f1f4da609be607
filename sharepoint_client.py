import logging
import time

import requests

from credentials import load_credentials
from digest_provider import DigestProvider
from errors import RequestError, SharePointError, TransportError
from models import OperationKind, Permission
from request_executor import RequestExecutor
from session_manager import SessionManager
from utils import quote_odata, to_server_relative, validate_filename

logger = logging.getLogger(__name__)


def _with_metadata(payload, default_type):
    """Wrap a payload in the __metadata envelope; a 'type' key overrides the entity type"""
    payload = dict(payload or {})
    entity_type = payload.pop('type', default_type)
    payload['__metadata'] = {'type': entity_type}
    return payload


class SharePointClient:
    def __init__(self, credentials, handshake=None, http=None, clock=time.time):
        """Initialize SharePoint client without immediate authentication"""
        self.credentials = credentials
        self.site_url = credentials.site_url
        self.site_path = credentials.site_path
        self.http = http or requests.Session()
        self.session_manager = SessionManager(
            credentials,
            handshake=handshake,
            clock=clock
        )
        self.digest_provider = DigestProvider(self.session_manager, self.site_url, http=self.http, clock=clock)
        self.executor = RequestExecutor(self.session_manager, self.digest_provider, http=self.http)
        logger.info(f"Initialized SharePoint client for site: {self.site_url}")

    @classmethod
    def from_env(cls, environ=None, **kwargs):
        """Create a client from SHAREPOINT_* / AZURE_* environment variables"""
        return cls(load_credentials(environ), **kwargs)

    # Session

    def connect(self):
        """Authenticate and fetch a form digest up front instead of on first use"""
        self.executor.resolve(OperationKind.CREATE)
        logger.info(f"Connected to {self.site_url}")
        return True

    def refresh_token(self):
        """Force a new handshake; the digest is fetched again on next use"""
        self.digest_provider.invalidate()
        self.session_manager.refresh()
        return True

    # Helpers

    def _api(self, path):
        return f"{self.site_url}/_api/{path}"

    def _path(self, path):
        return quote_odata(to_server_relative(self.site_path, path))

    def _folder_url(self, folder, suffix=''):
        return self._api(f"web/GetFolderByServerRelativeUrl('{self._path(folder)}'){suffix}")

    def _file_url(self, file_path, suffix=''):
        return self._api(f"web/GetFileByServerRelativeUrl('{self._path(file_path)}'){suffix}")

    def _list_url(self, title, suffix=''):
        return self._api(f"web/lists/GetByTitle('{quote_odata(title)}'){suffix}")

    def _call(self, action, url, kind, body=None, params=None, resolved=None):
        try:
            return self.executor.execute(url, kind, body=body, params=params, resolved=resolved)
        except SharePointError as e:
            logger.error(f"Failed to {action}: {str(e)}")
            raise

    def _get(self, action, url, params=None, verbose=False):
        kind = OperationKind.READ_VERBOSE if verbose else OperationKind.READ
        return self._call(action, url, kind, params=params).payload

    # Lists

    def get_all_lists(self, filter=None):
        """Get all lists in the site, optionally narrowed by an OData $filter"""
        params = {'$filter': filter} if filter else None
        return self._get("get lists", self._api("web/lists"), params=params)

    def get_list_by_title(self, title):
        return self._get(f"get list {title}", self._list_url(title))

    def get_list_fields(self, title):
        return self._get(f"get fields of list {title}", self._list_url(title, '/Fields'))

    def create_list(self, title, description=''):
        """Create a generic custom list"""
        payload = _with_metadata({
            'AllowContentTypes': True,
            'BaseTemplate': 100,
            'ContentTypesEnabled': True,
            'Description': description,
            'Title': title,
        }, 'SP.List')
        outcome = self._call(f"create list {title}", self._api("web/lists"), OperationKind.CREATE, body=payload)
        logger.info(f"Created list {title}")
        return outcome.payload

    def update_list(self, title, description=None):
        payload = {}
        if description is not None:
            payload['Description'] = description
        self._call(f"update list {title}", self._list_url(title), OperationKind.UPDATE,
                   body=_with_metadata(payload, 'SP.List'))
        logger.info(f"Updated list {title}")
        return True

    def get_list_items(self, title, filter=None):
        """Get list items with verbose metadata, optionally filtered"""
        params = {'$filter': filter} if filter else None
        return self._get(f"get items of list {title}", self._list_url(title, '/items'), params=params, verbose=True)

    # Folders

    def folder_exists(self, folder):
        payload = self._get(f"check folder {folder}", self._folder_url(folder, '/Exists'))
        if isinstance(payload, dict):
            return bool(payload.get('Exists', payload.get('value')))
        return bool(payload)

    def get_folder(self, folder):
        return self._get(f"get folder {folder}", self._folder_url(folder))

    def get_folder_folders(self, folder):
        return self._get(f"get folders of {folder}", self._folder_url(folder, '/Folders'))

    def get_folder_files(self, folder):
        return self._get(f"get files of {folder}", self._folder_url(folder, '/Files'))

    def create_folder(self, base_folder, folder, payload=None):
        """Create ``folder`` under ``base_folder``"""
        body = _with_metadata(payload, 'SP.Folder')
        body['ServerRelativeUrl'] = folder
        outcome = self._call(f"create folder {folder}", self._folder_url(base_folder, '/folders'),
                             OperationKind.CREATE, body=body)
        logger.info(f"Created folder {folder} in {base_folder}")
        return outcome.payload

    def move_folder(self, source, destination):
        url = self._folder_url(source, f"/moveto(newUrl='{self._path(destination)}',flags=1)")
        outcome = self._call(f"move folder {source}", url, OperationKind.CREATE)
        logger.info(f"Moved folder {source} to {destination}")
        return outcome.payload

    def remove_folder(self, folder):
        self._call(f"remove folder {folder}", self._folder_url(folder), OperationKind.DELETE)
        logger.info(f"Removed folder {folder}")
        return True

    def update_folder_metadata(self, folder, metadata):
        self._call(f"update metadata of folder {folder}", self._folder_url(folder, '/ListItemAllFields'),
                   OperationKind.UPDATE, body=_with_metadata(metadata, 'SP.Folder'))
        return True

    # Files

    def get_file_info(self, file_path):
        return self._get(f"get file info {file_path}", self._file_url(file_path), verbose=True)

    def get_file_property(self, file_path, property_name):
        """Get one property (e.g. ListItemAllFields, Versions) of a file"""
        return self._get(f"get {property_name} of {file_path}", self._file_url(file_path, f"/{property_name}"),
                         verbose=True)

    def download_file(self, file_path):
        """Download file contents as bytes"""
        outcome = self._call(f"download {file_path}", self._file_url(file_path, '/$value'), OperationKind.READ)
        logger.info(f"Downloaded {file_path} ({len(outcome.content)} bytes)")
        return outcome.content

    def download_file_from_folder(self, folder, file_name):
        url = self._folder_url(folder, f"/Files('{quote_odata(file_name)}')/$value")
        outcome = self._call(f"download {file_name} from {folder}", url, OperationKind.READ)
        return outcome.content

    def upload_file(self, folder, content, file_name, metadata=None):
        """
        Upload a file, then attach list item metadata to it.

        The metadata step addresses the file by the ServerRelativeUrl the
        upload returned. Both steps share one session and digest unless the
        digest expired in between, in which case the second step gets a
        fresh one.
        """
        if not validate_filename(file_name):
            raise ValueError(f"Invalid SharePoint file name: {file_name!r}")
        if isinstance(content, str):
            content = content.encode('utf-8')

        resolved = self.executor.resolve(OperationKind.CREATE)
        url = self._folder_url(folder, f"/Files/add(url='{quote_odata(file_name)}',overwrite=true)")
        outcome = self._call(f"upload {file_name} to {folder}", url, OperationKind.CREATE,
                             body=content, resolved=resolved)

        server_relative_url = outcome.server_relative_url
        if not server_relative_url:
            raise TransportError("Upload response has no ServerRelativeUrl", status_code=outcome.status_code, url=url)
        logger.info(f"File uploaded to {server_relative_url}")

        if metadata:
            self._call(
                f"attach metadata to {server_relative_url}",
                self._file_url(server_relative_url, '/ListItemAllFields'),
                OperationKind.UPDATE,
                body=_with_metadata(metadata, 'SP.ListItem'),
                resolved=resolved
            )
            logger.info(f"Updated metadata of {server_relative_url}")
        return outcome.payload

    def update_file_metadata(self, file_path, metadata):
        self._call(f"update metadata of {file_path}", self._file_url(file_path, '/ListItemAllFields'),
                   OperationKind.UPDATE, body=_with_metadata(metadata, 'SP.File'))
        return True

    def move_file(self, source, destination):
        url = self._file_url(source, f"/moveto(newurl='{self._path(destination)}',flags=1)")
        outcome = self._call(f"move file {source}", url, OperationKind.CREATE)
        logger.info(f"Moved file {source} to {destination}")
        return outcome.payload

    def delete_file(self, file_path):
        self._call(f"delete file {file_path}", self._file_url(file_path), OperationKind.DELETE)
        logger.info(f"Deleted file {file_path}")
        return True

    # Permissions

    def break_role_inheritance(self, folder):
        url = self._folder_url(
            folder, '/ListItemAllFields/breakroleinheritance(copyRoleAssignments=false,clearSubscopes=true)'
        )
        outcome = self._call(f"break role inheritance on {folder}", url, OperationKind.CREATE)
        return outcome.payload

    def get_folder_permissions(self, folder):
        return self._get(f"get permissions of {folder}", self._folder_url(folder, '/ListItemAllFields/roleAssignments'),
                         verbose=True)

    def get_user_id(self, email):
        url = self._api(f"web/SiteUsers/getByEmail('{quote_odata(email)}')")
        payload = self._get(f"look up user {email}", url)
        if not isinstance(payload, dict) or payload.get('Id') is None:
            raise TransportError(f"User lookup for {email} returned no Id", url=url)
        return payload['Id']

    def grant_permission_to_users(self, folder, users, permission):
        """Add a role assignment on ``folder`` for each user email"""
        role = int(Permission(permission))
        logger.info(f"Granting {Permission(role).name} on {folder} to {len(users)} users")
        for user_id in self._user_ids(users):
            url = self._folder_url(
                folder, f"/ListItemAllFields/roleassignments/addroleassignment(principalid={user_id},roledefid={role})"
            )
            self._call(f"grant permission to principal {user_id}", url, OperationKind.CREATE)
        return True

    def remove_permissions_from_folder(self, folder):
        """Remove every role assignment currently on ``folder``"""
        payload = self.get_folder_permissions(folder) or {}
        assignments = payload.get('results', payload.get('value', [])) if isinstance(payload, dict) else payload
        principal_ids = _unique(assignment.get('PrincipalId') for assignment in assignments)
        for principal_id in principal_ids:
            self._remove_role_assignment(folder, principal_id)
        return True

    def remove_permission_to_users(self, folder, users, permission=None):
        """
        Remove the users' role assignments on ``folder``.
        With ``permission`` given only that role is removed.
        """
        for user_id in self._user_ids(users):
            if permission is None:
                self._remove_role_assignment(folder, user_id)
            else:
                url = self._folder_url(
                    folder,
                    f"/ListItemAllFields/roleassignments/removeroleassignment"
                    f"(principalid={user_id},roledefid={int(Permission(permission))})"
                )
                self._call(f"revoke permission from principal {user_id}", url, OperationKind.CREATE)
        return True

    def _user_ids(self, users):
        return _unique(self.get_user_id(user) for user in users)

    def _remove_role_assignment(self, folder, principal_id):
        url = self._folder_url(folder, f"/ListItemAllFields/roleassignments/getbyprincipalid({principal_id})")
        try:
            self.executor.execute(url, OperationKind.DELETE)
        except RequestError as e:
            # Already removed
            if e.status_code != 404:
                logger.error(f"Failed to remove role assignment of principal {principal_id}: {str(e)}")
                raise
            logger.info(f"Role assignment of principal {principal_id} on {folder} already removed")


def _unique(values):
    seen = []
    for value in values:
        if value is not None and value not in seen:
            seen.append(value)
    return seen
