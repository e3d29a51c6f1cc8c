"""Settings library for the remote link and user preferences.

Provides:
    - Schema validation for settings.json.
    - Loading, saving, reverting and sectioned access to application settings.
    - RemoteConfig: the typed view of the remote link section.
    - Application paths for the settings file, the stored credentials and the local cache.
"""

import dataclasses
import json
import logging
import os
import pathlib
import shutil
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from ..status import status

app_name: str = 'HouseholdLedger'

DATA_DIR_ENV_KEY: str = 'HOUSEHOLD_LEDGER_DATA_DIR'

REMOTE_KEYS: List[str] = ['client_id', 'api_key', 'spreadsheet_id', 'client_secret']
REQUIRED_REMOTE_KEYS: List[str] = ['client_id', 'api_key', 'spreadsheet_id']

PREFERENCE_KEYS: List[str] = [
    'currency',
    'sync_enabled',
    'setup_complete',
]

SETTINGS_SCHEMA: Dict[str, Any] = {
    'remote': {
        'type': dict,
        'required': True,
        'item_schema': {
            'client_id': {'type': str, 'required': True},
            'api_key': {'type': str, 'required': True},
            'spreadsheet_id': {'type': str, 'required': True},
            'client_secret': {'type': str, 'required': False},
        }
    },
    'preferences': {
        'type': dict,
        'required': True,
        'item_schema': {
            'currency': {'type': str, 'required': True},
            'sync_enabled': {'type': bool, 'required': True},
            'setup_complete': {'type': bool, 'required': True},
        }
    },
}


@dataclasses.dataclass
class RemoteConfig:
    """Remote link configuration.

    Sync is only attempted when client_id, api_key and spreadsheet_id are all non-empty.
    """
    client_id: str = ''
    api_key: str = ''
    spreadsheet_id: str = ''
    client_secret: str = ''

    def is_complete(self) -> bool:
        return all(str(getattr(self, k) or '').strip() for k in REQUIRED_REMOTE_KEYS)

    def missing_keys(self) -> List[str]:
        return [k for k in REQUIRED_REMOTE_KEYS if not str(getattr(self, k) or '').strip()]

    @classmethod
    def from_section(cls, data: Dict[str, Any]) -> 'RemoteConfig':
        return cls(**{k: str(data.get(k) or '') for k in REMOTE_KEYS})

    def to_section(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    def client_config(self) -> Dict[str, Any]:
        """Return the OAuth client configuration used by the installed-app flow."""
        return {
            'installed': {
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'auth_uri': 'https://accounts.google.com/o/oauth2/auth',
                'token_uri': 'https://oauth2.googleapis.com/token',
                'redirect_uris': ['http://localhost'],
            }
        }


def _validate_section(section_name: str, section: Any, item_schema: Dict[str, Any]) -> None:
    """Validate a settings section against its item schema.

    Args:
        section_name: Name of the section, used in error messages.
        section: The section data.
        item_schema: Field name to {'type', 'required'} mapping.

    Raises:
        TypeError: If the section or a field has the wrong type.
        ValueError: If a required field is missing.
    """
    logging.debug(f'Validating "{section_name}" section.')
    if not isinstance(section, dict):
        msg: str = f'"{section_name}" must be a dict.'
        logging.error(msg)
        raise TypeError(msg)

    for field, field_specs in item_schema.items():
        if field not in section:
            if field_specs['required']:
                msg = f'"{section_name}" is missing "{field}".'
                logging.error(msg)
                raise ValueError(msg)
            continue
        if not isinstance(section[field], field_specs['type']):
            msg = (
                f'"{section_name}" field "{field}" must be {field_specs["type"]}, '
                f'got {type(section[field])}.'
            )
            logging.error(msg)
            raise TypeError(msg)


class ConfigPaths:
    """Manage application file paths and make sure directories and templates exist.

    The data root is, in order of precedence, the ``root`` argument, the
    ``HOUSEHOLD_LEDGER_DATA_DIR`` environment variable, then Qt's writable
    AppDataLocation.
    """

    def __init__(self, root: Optional[str] = None) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')

        root = root or os.environ.get(DATA_DIR_ENV_KEY, '')
        if root:
            app_data_dir = pathlib.Path(root)
        else:
            p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
            app_data_dir = pathlib.Path(p)
        logging.debug(f'Using app data directory: {app_data_dir}')

        self.app_data_dir: pathlib.Path = app_data_dir
        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.settings_template: pathlib.Path = self.template_dir / 'settings.json.template'

        self.config_dir: pathlib.Path = app_data_dir / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'
        self.db_dir: pathlib.Path = self.config_dir / 'db'

        self.settings_path: pathlib.Path = self.config_dir / 'settings.json'
        self.creds_path: pathlib.Path = self.auth_dir / 'creds.json'
        self.db_path: pathlib.Path = self.db_dir / 'cache.db'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Create missing directories and copy the settings template into place.

        Raises:
            FileNotFoundError: If the bundled settings template is missing.
        """
        if not self.settings_template.exists():
            msg: str = f'Missing settings template: {self.settings_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)

        for path in (self.config_dir, self.auth_dir, self.db_dir):
            if not path.exists():
                logging.debug(f'Creating directory: {path}')
                path.mkdir(parents=True, exist_ok=True)

        if not self.settings_path.exists():
            logging.debug(f'Copying default settings from template to {self.settings_path}')
            shutil.copy(self.settings_template, self.settings_path)

    def revert_settings_to_template(self) -> None:
        """Restore settings.json from the bundled template."""
        logging.debug(f'Reverting settings to template: {self.settings_template}')
        shutil.copy(self.settings_template, self.settings_path)


class SettingsAPI(ConfigPaths):
    """
    Sectioned get/set/revert/save access to settings.json.

    Preferences are also reachable with dictionary-style access, e.g.
    ``settings['currency']``.
    """

    def __init__(self, root: Optional[str] = None) -> None:
        super().__init__(root=root)

        self._signals_blocked: bool = False
        self.settings_data: Dict[str, Any] = {k: {} for k in SETTINGS_SCHEMA}
        self.load_settings()

    def __getitem__(self, key: str) -> Any:
        """Retrieve a preference value.

        Raises:
            KeyError: If key is not a known preference.
        """
        if key not in PREFERENCE_KEYS:
            raise KeyError(f'Invalid preference key: {key}, must be one of {PREFERENCE_KEYS}')

        _type = SETTINGS_SCHEMA['preferences']['item_schema'][key]['type']
        v = self.settings_data['preferences'].get(key)
        if not isinstance(v, _type):
            logging.error(f'Preference "{key}" is not of type {_type}, got {type(v)}.')
            return None
        return v

    def __setitem__(self, key: str, value: Any) -> None:
        """Assign a preference value and persist it.

        Raises:
            KeyError: If key is not a known preference.
        """
        if key not in PREFERENCE_KEYS:
            raise KeyError(f'Invalid preference key: {key}, must be one of {PREFERENCE_KEYS}')

        _type = SETTINGS_SCHEMA['preferences']['item_schema'][key]['type']
        if not isinstance(value, _type):
            logging.warning(f'Preference "{key}" is not of type {_type}, got {type(value)}.')
            value = _type(value)

        self.settings_data['preferences'][key] = value
        self.save_section('preferences')

        if self._signals_blocked:
            return
        from ..ui.actions import signals
        signals.preferenceChanged.emit(key, value)

    def block_signals(self, v: bool) -> None:
        """Enable or disable emission of configuration change signals."""
        self._signals_blocked = v

    def load_settings(self) -> Dict[str, Any]:
        """Load settings.json from disk and validate it.

        Returns:
            The loaded settings dictionary.

        Raises:
            status.SettingsNotFoundException: If settings.json is missing.
            status.SettingsInvalidException: If parsing or validation fails.
        """
        logging.debug(f'Loading settings from "{self.settings_path}"')
        if not self.settings_path.exists():
            raise status.SettingsNotFoundException(str(self.settings_path))

        try:
            with self.settings_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate_settings_data(data)
        except (ValueError, TypeError) as ex:
            logging.error(f'Failed to load settings: {ex}')
            raise status.SettingsInvalidException(str(ex)) from ex

        self.settings_data = data
        return self.settings_data

    def validate_settings_data(self, data: Optional[Dict[str, Any]] = None) -> None:
        """Validate settings against SETTINGS_SCHEMA.

        Raises:
            ValueError: If a required section or field is missing.
            TypeError: If a section or field has the wrong type.
        """
        if data is None:
            data = self.settings_data

        for section_name, specs in SETTINGS_SCHEMA.items():
            if section_name not in data:
                if specs['required']:
                    raise ValueError(f'Missing required section: {section_name}')
                continue
            _validate_section(section_name, data[section_name], specs['item_schema'])

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Return a copy of a settings section.

        Raises:
            KeyError: If section_name is unknown.
        """
        return self.settings_data[section_name].copy()

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace, validate and persist a settings section.

        The previous section is restored when validation fails.

        Raises:
            ValueError: If section_name is unknown or the data fails validation.
            TypeError: If the data has the wrong types.
        """
        if section_name not in SETTINGS_SCHEMA:
            msg: str = f'Unknown section_name for set: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        current_section_data: Dict[str, Any] = self.settings_data.get(section_name, {}).copy()
        self.settings_data[section_name] = new_data
        try:
            self.validate_settings_data()
        except (ValueError, TypeError) as e:
            logging.error(f'Validation error on set_section("{section_name}"): {e}')
            self.settings_data[section_name] = current_section_data
            raise

        self.save_section(section_name)
        if self._signals_blocked:
            return
        from ..ui.actions import signals
        signals.configSectionChanged.emit(section_name)

    def revert_section(self, section_name: str) -> None:
        """Revert a section to its template default and save it.

        Raises:
            ValueError: If section_name is unknown.
        """
        if section_name not in SETTINGS_SCHEMA:
            msg: str = f'Unknown section_name for revert: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.settings_template.open('r', encoding='utf-8') as f:
            template_data: Dict[str, Any] = json.load(f)

        self.settings_data[section_name] = template_data[section_name]
        self.save_section(section_name)
        if self._signals_blocked:
            return
        from ..ui.actions import signals
        signals.configSectionChanged.emit(section_name)

    def save_section(self, section_name: str) -> None:
        """Persist a single section to settings.json, leaving other sections as they are on disk.

        Raises:
            ValueError: If section_name is unknown.
        """
        if section_name not in SETTINGS_SCHEMA:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        try:
            with self.settings_path.open('r', encoding='utf-8') as f:
                original_data: Dict[str, Any] = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logging.warning(f'Could not read "{self.settings_path}", rewriting it: {e}')
            original_data = dict(self.settings_data)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.settings_data[section_name]
        with self.settings_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)
        logging.debug(f'Saved section "{section_name}" to "{self.settings_path}"')

    def remote_config(self) -> RemoteConfig:
        """Return the stored remote link configuration."""
        return RemoteConfig.from_section(self.get_section('remote'))

    def set_remote_config(self, config: RemoteConfig) -> None:
        """Persist a remote link configuration."""
        self.set_section('remote', config.to_section())


settings: SettingsAPI = SettingsAPI()
