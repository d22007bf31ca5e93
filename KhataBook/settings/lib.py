"""Settings library for application and authentication configurations.

Provides:
    - Schema validation for the app.json structure, including the default column schema.
    - Loading, saving and reverting application settings and the Google client secret.
    - Paths for configuration templates, cached credentials and client-side storage.
"""

import copy
import json
import logging
import pathlib
import shutil
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from ..status import status

app_name: str = 'KhataBook'

COLUMN_TYPES: List[str] = ['text', 'number', 'date', 'boolean', 'select']
COLUMN_ROLES: List[str] = ['credit', 'debit', 'amount', 'party', 'description']

APP_SCHEMA: Dict[str, Any] = {
    'app': {
        'type': dict,
        'required': True,
        'item_schema': {
            'name': {'type': str, 'required': True},
            'version': {'type': str, 'required': True},
            'document_prefix': {'type': str, 'required': True},
            'records_tab': {'type': str, 'required': True},
            'settings_tab': {'type': str, 'required': True},
        }
    },
    'backup': {
        'type': dict,
        'required': True,
        'item_schema': {
            'container_name': {'type': str, 'required': True},
            'file_name': {'type': str, 'required': True},
            'envelope_version': {'type': str, 'required': True},
        }
    },
    'session': {
        'type': dict,
        'required': True,
        'item_schema': {
            'max_age_days': {'type': int, 'required': True},
            'refresh_buffer_seconds': {'type': int, 'required': True},
            'default_token_lifetime': {'type': int, 'required': True},
        }
    },
    'columns': {
        'type': list,
        'required': True,
    },
}


def validate_columns(columns: Any) -> None:
    """Validate a serialized column schema.

    Args:
        columns: A list of column dicts, each with 'name', 'type' and 'required',
            and optionally 'options' and 'role'.

    Raises:
        TypeError: If columns is not a list of dicts or a field has the wrong type.
        ValueError: If the list is empty, a name repeats, or a type/role is unknown.
    """
    if not isinstance(columns, list):
        raise TypeError(f'columns must be a list, got {type(columns)}.')
    if not columns:
        raise ValueError('columns must not be empty.')

    seen = set()
    for column in columns:
        if not isinstance(column, dict):
            raise TypeError(f'Column "{column}" must be a dict.')

        name = column.get('name')
        if not isinstance(name, str) or not name:
            raise TypeError(f'Column name must be a non-empty string, got "{name}".')
        if name in seen:
            raise ValueError(f'Column name "{name}" is not unique.')
        seen.add(name)

        if column.get('type') not in COLUMN_TYPES:
            raise ValueError(f'Column "{name}" type must be one of {COLUMN_TYPES}, got "{column.get("type")}".')
        if not isinstance(column.get('required', False), bool):
            raise TypeError(f'Column "{name}" field "required" must be a bool.')

        options = column.get('options')
        if options is not None and (
                not isinstance(options, list) or not all(isinstance(o, str) for o in options)):
            raise TypeError(f'Column "{name}" options must be a list of strings.')

        role = column.get('role')
        if role is not None and role not in COLUMN_ROLES:
            raise ValueError(f'Column "{name}" role must be one of {COLUMN_ROLES}, got "{role}".')


def _validate_items(section_name: str, section: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate the fields of a dict section against its item schema.

    Raises:
        ValueError: If a required field is missing.
        TypeError: If a field has the wrong type.
    """
    logging.debug(f'Validating "{section_name}" section.')
    for field, field_specs in item_schema.items():
        if field_specs['required'] and field not in section:
            msg = f'Section "{section_name}" missing "{field}".'
            logging.error(msg)
            raise ValueError(msg)
        if field not in section:
            continue
        value = section[field]
        # bool is an int subclass; do not accept it for int fields
        if isinstance(value, bool) and field_specs['type'] is not bool:
            msg = f'Section "{section_name}" field "{field}" must be {field_specs["type"]}, got bool.'
            logging.error(msg)
            raise TypeError(msg)
        if not isinstance(value, field_specs['type']):
            msg = (
                f'Section "{section_name}" field "{field}" must be {field_specs["type"]}, '
                f'got {type(value)}.'
            )
            logging.error(msg)
            raise TypeError(msg)


class ConfigPaths:
    """Manage application file paths and ensure default templates and directories exist.

    Args:
        root: Optional root directory. Defaults to the platform's application data location.
    """

    def __init__(self, root: Optional[str] = None) -> None:
        if root is None:
            QtCore.QCoreApplication.setApplicationName(app_name)
            QtCore.QCoreApplication.setOrganizationName('')
            logging.debug(f'Setting application name: {app_name}')

            p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
            root = p

        self.root_dir: pathlib.Path = pathlib.Path(root)
        logging.debug(f'Using app data directory: {self.root_dir}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.client_secret_template: pathlib.Path = self.template_dir / 'client_secret.json.template'
        self.app_template: pathlib.Path = self.template_dir / 'app.json.template'

        self.config_dir: pathlib.Path = self.root_dir / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'

        # Config files
        self.client_secret_path: pathlib.Path = self.config_dir / 'client_secret.json'
        self.app_path: pathlib.Path = self.config_dir / 'app.json'
        self.creds_path: pathlib.Path = self.auth_dir / 'creds.json'

        # Client-side key-value storage
        self.storage_path: pathlib.Path = self.config_dir / 'storage.json'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Verify templates exist and prepare configuration directories and files.

        Raises:
            FileNotFoundError: If a required template is missing.
        """
        logging.debug(f'Verifying required templates in {self.template_dir}')
        for template in (self.client_secret_template, self.app_template):
            if not template.exists():
                msg: str = f'Missing template: {template}'
                logging.error(msg)
                raise FileNotFoundError(msg)

        for directory in (self.config_dir, self.auth_dir):
            if not directory.exists():
                logging.debug(f'Creating directory: {directory}')
                directory.mkdir(parents=True, exist_ok=True)

        # Ensure valid configs exists even if we haven't yet set them up
        if not self.client_secret_path.exists():
            logging.debug(f'Copying default client_secret from template to {self.client_secret_path}')
            shutil.copy(self.client_secret_template, self.client_secret_path)
        if not self.app_path.exists():
            logging.debug(f'Copying default app settings from template to {self.app_path}')
            shutil.copy(self.app_template, self.app_path)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save app.json sections and client_secret.json.
    """
    required_client_secret_keys: List[str] = ['client_id', 'project_id', 'client_secret', 'auth_uri', 'token_uri']

    def __init__(self, root: Optional[str] = None) -> None:
        super().__init__(root=root)

        self.app_data: Dict[str, Any] = {}
        self.client_secret_data: Dict[str, Any] = {}

        self.init_data()

    def init_data(self) -> None:
        """Reload app and client_secret data from disk."""
        self.load_app_config()
        self.load_client_secret()

    def load_app_config(self) -> Dict[str, Any]:
        """Load app.json from disk and validate it against the schema.

        Raises:
            status.SettingsNotFoundException: If app.json is missing.
            status.SettingsInvalidException: If JSON parsing or validation fails.
        """
        logging.debug(f'Loading app settings from "{self.app_path}"')
        if not self.app_path.exists():
            raise status.SettingsNotFoundException

        try:
            with self.app_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate_app_data(data)
        except status.SettingsInvalidException:
            raise
        except (ValueError, TypeError) as ex:
            raise status.SettingsInvalidException(str(ex)) from ex

        self.app_data = data
        return self.app_data

    def load_client_secret(self) -> Dict[str, Any]:
        """Load client_secret.json from disk and validate required OAuth fields.

        Raises:
            FileNotFoundError: If client_secret.json file is missing.
            status.ClientSecretInvalidException: If JSON parsing or required fields are missing.
        """
        logging.debug(f'Loading client_secret from "{self.client_secret_path}"')
        if not self.client_secret_path.exists():
            msg: str = f'Client secret file not found: {self.client_secret_path}'
            logging.error(msg)
            raise FileNotFoundError(msg)
        try:
            with self.client_secret_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
        except (ValueError, json.JSONDecodeError) as ex:
            raise status.ClientSecretInvalidException from ex

        self.validate_client_secret(data)
        self.client_secret_data = data
        return self.client_secret_data

    def validate_client_secret(self, data=None) -> str:
        """Validate that the client configuration contains required OAuth credentials.

        Args:
            data (dict, optional): Client secret data to validate. Defaults to loaded client_secret_data.

        Returns:
            str: Section key used ('installed' or 'web').

        Raises:
            status.ClientSecretInvalidException: If no valid client_secret section exists or required fields are missing.
        """
        if data is None:
            data = self.client_secret_data

        key = next((k for k in ('installed', 'web') if k in data), None)
        if not key:
            raise status.ClientSecretInvalidException('Missing "installed" or "web" section in client_secret.')

        logging.debug(f'Found "{key}" section in client_secret.')

        config_section: Dict[str, Any] = data[key]
        missing: List[str] = [k for k in self.required_client_secret_keys if k not in config_section]
        if missing:
            raise status.ClientSecretInvalidException(
                f'Missing required fields in the \'{key}\' section: {missing}.'
            )
        return key

    def is_client_secret_configured(self) -> bool:
        """Return True if the client secret carries a client id (i.e. is not the empty template)."""
        try:
            key = self.validate_client_secret()
        except status.ClientSecretInvalidException:
            return False
        return bool(self.client_secret_data[key].get('client_id'))

    def validate_app_data(self, data: Dict[str, Any] = None) -> None:
        """Validate app data against APP_SCHEMA.

        Raises:
            status.SettingsInvalidException: If a required section is missing or has the wrong type.
            ValueError, TypeError: If a section's contents fail validation.
        """
        if data is None:
            data = self.app_data
        if not data:
            raise status.SettingsInvalidException('App settings are empty.')

        logging.debug('Validating app settings against schema.')
        for field, specs in APP_SCHEMA.items():
            if specs.get('required') and field not in data:
                raise status.SettingsInvalidException(f'Missing required field: {field}')

            if field not in data:
                continue

            if not isinstance(data[field], specs['type']):
                raise status.SettingsInvalidException(
                    f'Field "{field}" must be {specs["type"]}, got {type(data[field])}.'
                )

            if field == 'columns':
                validate_columns(data[field])
            elif 'item_schema' in specs:
                _validate_items(field, data[field], specs['item_schema'])

        logging.debug('App settings are valid.')

    def get_section(self, section_name: str) -> Any:
        """Retrieve a copy of configuration data for an app or client_secret section.

        Raises:
            KeyError: If section_name is not in app_data.
        """
        if section_name == 'client_secret':
            return copy.deepcopy(self.client_secret_data)

        return copy.deepcopy(self.app_data[section_name])

    def set_section(self, section_name: str, new_data: Any) -> None:
        """Validate, replace and persist a configuration section.

        Raises:
            ValueError: If section_name is unrecognized.
            status.SettingsInvalidException, ValueError, TypeError: If the new data fails validation.
        """
        from ..core.signals import signals

        if section_name == 'client_secret':
            logging.debug('Setting entire client_secret data.')
            self.validate_client_secret(new_data)
            self.client_secret_data = new_data
            self.save_section('client_secret')

            signals.configSectionChanged.emit(section_name)
            return

        if section_name not in APP_SCHEMA:
            msg: str = f'Unknown section_name: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        candidate: Dict[str, Any] = dict(self.app_data)
        candidate[section_name] = new_data
        self.validate_app_data(candidate)

        self.app_data = candidate
        self.save_section(section_name)

        signals.configSectionChanged.emit(section_name)

    def revert_section(self, section_name: str) -> None:
        """Revert a configuration section to its template default and save.

        Raises:
            ValueError: If section_name is invalid or not present in the template.
        """
        template = self.client_secret_template if section_name == 'client_secret' else self.app_template
        with template.open('r', encoding='utf-8') as f:
            template_data: Dict[str, Any] = json.load(f)

        if section_name == 'client_secret':
            logging.debug('Reverting client_secret to template.')
            self.set_section(section_name, template_data)
            return

        if section_name not in template_data:
            msg = f'No template-based revert logic for section "{section_name}".'
            logging.error(msg)
            raise ValueError(msg)

        logging.debug(f'Reverting "{section_name}" to template.')
        self.set_section(section_name, template_data[section_name])

    def save_section(self, section_name: str) -> None:
        """Persist a single configuration section to its corresponding file.

        Raises:
            ValueError: If section_name is not recognized.
        """
        if section_name == 'client_secret':
            logging.debug(f'Saving client_secret to "{self.client_secret_path}"')
            with self.client_secret_path.open('w', encoding='utf-8') as f:
                json.dump(self.client_secret_data, f, indent=4, ensure_ascii=False)
            return

        if section_name not in self.app_data:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.app_path.open('r', encoding='utf-8') as f:
            original_data: Dict[str, Any] = json.load(f)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.app_data[section_name]

        logging.debug(f'Saving section "{section_name}" to "{self.app_path}"')
        with self.app_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)


settings: Optional[SettingsAPI] = None


def get_settings() -> SettingsAPI:
    """Return the shared SettingsAPI, creating it on first use."""
    global settings
    if settings is None:
        settings = SettingsAPI()
    return settings
