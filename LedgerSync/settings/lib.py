"""Settings library for the sync configuration.

Provides:
    - Schema validation and enforcement for the sync.json structure.
    - Loading, saving, reverting, and managing application settings.
    - Application paths (config file, local database) resolved through Qt's standard locations.
"""

import json
import logging
import pathlib
import shutil
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from ..status import status

app_name: str = 'LedgerSync'

COLLECTION_NAMES: List[str] = [
    'transactions', 'categories', 'payment_methods', 'categoriesbudget', 'transactionsbudget',
]
DRAIN_POLICIES: List[str] = ['all_or_nothing', 'per_entry']

SYNC_SCHEMA: Dict[str, Any] = {
    'remote': {
        'type': dict,
        'required': True,
        'item_schema': {
            'url': {'type': str, 'required': True},
            'api_key': {'type': str, 'required': True},
            'timeout': {'type': (int, float), 'required': True},
        }
    },
    'sync': {
        'type': dict,
        'required': True,
        'item_schema': {
            'debounce_ms': {'type': int, 'required': True},
            'probe_url': {'type': str, 'required': True},
            'drain_policy': {'type': str, 'required': True, 'allowed_values': DRAIN_POLICIES},
        }
    },
    'collections': {
        'type': list,
        'required': True,
        'allowed_values': COLLECTION_NAMES,
    },
}


def _validate_items(section_name: str, section: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate the fields of a dictionary section against its item schema.

    Args:
        section_name: Name of the section, used in error messages.
        section: The section data.
        item_schema: Mapping of field names to their type/required/allowed_values specs.

    Raises:
        TypeError: If a field has the wrong type.
        ValueError: If a required field is missing or a value is not allowed.
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
        # bool is an int subclass, never a valid number here
        if isinstance(value, bool) or not isinstance(value, field_specs['type']):
            msg = (
                f'Section "{section_name}" field "{field}" must be {field_specs["type"]}, '
                f'got {type(value)}.'
            )
            logging.error(msg)
            raise TypeError(msg)
        allowed = field_specs.get('allowed_values')
        if allowed and value not in allowed:
            msg = f'Section "{section_name}" field "{field}" must be one of {allowed}, got "{value}".'
            logging.error(msg)
            raise ValueError(msg)


def _validate_collections(collections: List[Any], allowed_values: List[str]) -> None:
    """Validate the 'collections' section.

    Args:
        collections: Collection names refreshed by the sync engine.
        allowed_values: Known collection names.

    Raises:
        ValueError: If a name is unknown or listed twice.
    """
    logging.debug('Validating "collections" section.')
    for name in collections:
        if name not in allowed_values:
            msg = f'Collection "{name}" must be one of {allowed_values}.'
            logging.error(msg)
            raise ValueError(msg)
    if len(set(collections)) != len(collections):
        msg = f'Collections must be unique, got {collections}.'
        logging.error(msg)
        raise ValueError(msg)


class ConfigPaths:
    """Manage application file paths and ensure the default config template is in place.

    Paths are resolved from Qt's writable AppDataLocation, so tests can redirect
    everything with ``QStandardPaths.setTestModeEnabled(True)``.
    """

    def __init__(self) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')
        logging.debug(f'Setting application name: {app_name}')

        p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
        app_data_dir = pathlib.Path(p)
        logging.debug(f'Using app data directory: {app_data_dir}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.config_template: pathlib.Path = self.template_dir / 'sync.json.template'

        self.config_dir: pathlib.Path = app_data_dir / 'config'
        self.db_dir: pathlib.Path = self.config_dir / 'db'

        self.config_path: pathlib.Path = self.config_dir / 'sync.json'
        self.db_path: pathlib.Path = self.db_dir / 'ledger.db'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Verify the template exists and prepare the config directories and file.

        Raises:
            FileNotFoundError: If the template directory or file is missing.
        """
        logging.debug(f'Verifying required directories and templates in {self.template_dir}')
        if not self.template_dir.exists():
            msg: str = f'Missing template directory: {self.template_dir}'
            logging.error(msg)
            raise FileNotFoundError(msg)
        if not self.config_template.exists():
            msg = f'Missing sync config template: {self.config_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)

        if not self.config_dir.exists():
            logging.debug(f'Creating config directory: {self.config_dir}')
            self.config_dir.mkdir(parents=True, exist_ok=True)

        if not self.db_dir.exists():
            logging.debug(f'Creating db directory: {self.db_dir}')
            self.db_dir.mkdir(parents=True, exist_ok=True)

        if not self.config_path.exists():
            logging.debug(f'Copying default sync config from template to {self.config_path}')
            shutil.copy(self.config_template, self.config_path)

    def revert_config_to_template(self) -> None:
        """Restore sync.json from the default template file.

        Raises:
            FileNotFoundError: If the template file is missing.
        """
        logging.debug(f'Reverting sync config to template: {self.config_template}')
        if not self.config_template.exists():
            msg: str = f'Sync config template not found: {self.config_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)
        shutil.copy(self.config_template, self.config_path)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save sync.json sections.
    """

    def __init__(self, config_path: Optional[str] = None) -> None:
        """Initialize SettingsAPI and load the sync configuration.

        Args:
            config_path: Optional path to a custom sync.json file.
        """
        super().__init__()

        self.config_path: pathlib.Path = pathlib.Path(config_path) if config_path else self.config_path
        self._signals_blocked: bool = False

        self.config_data: Dict[str, Any] = {}
        self.init_data()

    def block_signals(self, v: bool) -> None:
        """Enable or disable emission of configuration change signals.

        Args:
            v: True to block signals, False to allow signals to emit.
        """
        self._signals_blocked = v

    def _emit_section_changed(self, section_name: str) -> None:
        if self._signals_blocked:
            return
        from ..actions import signals
        signals.configSectionChanged.emit(section_name)

    @QtCore.Slot()
    def init_data(self) -> None:
        """Reload the configuration and notify listeners of every section."""
        self.load_config()
        for section in SYNC_SCHEMA.keys():
            self._emit_section_changed(section)

    def load_config(self) -> Dict[str, Any]:
        """Load sync.json from disk and validate against schema.

        Returns:
            The loaded configuration dictionary.

        Raises:
            status.ConfigNotFoundException: If sync.json is missing.
            status.ConfigInvalidException: If JSON parsing or validation fails.
        """
        logging.debug(f'Loading sync config from "{self.config_path}"')
        if not self.config_path.exists():
            raise status.ConfigNotFoundException

        try:
            with self.config_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate_config_data(data)
            self.config_data = data
            return self.config_data
        except status.ConfigInvalidException:
            raise
        except Exception as ex:
            raise status.ConfigInvalidException(str(ex)) from ex

    def validate_config_data(self, data: Dict[str, Any] = None) -> None:
        """Validate configuration data against SYNC_SCHEMA.

        Args:
            data (dict, optional): Data to validate. Defaults to self.config_data.

        Raises:
            RuntimeError: If data is empty.
            status.ConfigInvalidException: If a required section is missing or has the wrong type.
            TypeError, ValueError: If a section's contents fail validation.
        """
        if data is None:
            data = self.config_data
        if not data:
            raise RuntimeError('Sync config data is empty.')

        logging.debug('Validating sync config against schema.')
        for field, specs in SYNC_SCHEMA.items():
            if specs.get('required') and field not in data:
                raise status.ConfigInvalidException(f'Missing required field: {field}')

            if not isinstance(data[field], specs['type']):
                raise status.ConfigInvalidException(
                    f'Field "{field}" must be {specs["type"]}, got {type(data[field])}.'
                )

            if field == 'collections':
                _validate_collections(data[field], specs['allowed_values'])
            else:
                _validate_items(field, data[field], specs['item_schema'])

        logging.debug('Sync config is valid.')

    def get_section(self, section_name: str) -> Any:
        """Retrieve a copy of a configuration section.

        Args:
            section_name: Section name, a key of SYNC_SCHEMA.

        Returns:
            A copy of the requested section data.

        Raises:
            KeyError: If section_name is not in the configuration.
        """
        return self.config_data[section_name].copy()

    def set_section(self, section_name: str, new_data: Any) -> None:
        """Replace, validate and persist a configuration section.

        The previous value is restored if validation fails.

        Args:
            section_name: Section to update.
            new_data: New data for the section.

        Raises:
            ValueError: If section_name is unrecognized or the data is invalid.
            TypeError: If the data has the wrong type.
        """
        if section_name not in SYNC_SCHEMA:
            msg: str = f'Unknown section_name for set: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        current_section_data = self.config_data.get(section_name)
        self.config_data[section_name] = new_data
        try:
            self.validate_config_data()
        except (ValueError, TypeError, status.ConfigInvalidException) as e:
            logging.error(f'Validation error on set_section("{section_name}"): {e}')
            self.config_data[section_name] = current_section_data
            raise

        self.save_section(section_name)
        self._emit_section_changed(section_name)

    def revert_section(self, section_name: str) -> None:
        """Revert a configuration section to its template default and save.

        Args:
            section_name: Section to revert.

        Raises:
            ValueError: If section_name is not present in the template.
        """
        with self.config_template.open('r', encoding='utf-8') as f:
            template_data: Dict[str, Any] = json.load(f)

        if section_name not in template_data:
            msg = f'No template-based revert logic for section "{section_name}".'
            logging.error(msg)
            raise ValueError(msg)

        self.config_data[section_name] = template_data[section_name]
        self.save_section(section_name)
        self._emit_section_changed(section_name)

    def save_section(self, section_name: str) -> None:
        """Persist a single configuration section to sync.json.

        Args:
            section_name: The section to save.

        Raises:
            ValueError: If section_name is not recognized.
        """
        if section_name not in self.config_data:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.config_path.open('r', encoding='utf-8') as f:
            original_data: Dict[str, Any] = json.load(f)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.config_data[section_name]

        with self.config_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)


settings: SettingsAPI = SettingsAPI()
