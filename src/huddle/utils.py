import os
import time
from pathlib import Path

import yaml

# User config location (HUDDLE_CONFIG overrides)
DEFAULT_CONFIG_PATH = os.environ.get("HUDDLE_CONFIG", "config.yaml")
SCHEMA_PATH = Path(__file__).parent / "config_schema.yaml"

# Schema type name -> accepted Python types
TYPE_MAP = {
    'str': (str,),
    'int': (int,),
    'float': (float, int),
    'bool': (bool,),
    'dict': (dict,),
}

SAVE_RETRIES = 3


def _is_leaf(item) -> bool:
    """Schema leaves look like {value, type, description, options?}."""
    return isinstance(item, dict) and 'type' in item


def _schema_defaults(schema: dict) -> dict:
    """Strip a schema down to its default values, keeping the section nesting."""
    defaults = {}
    for key, item in (schema or {}).items():
        if _is_leaf(item) or (isinstance(item, dict) and 'value' in item):
            defaults[key] = item.get('value')
        elif isinstance(item, dict):
            defaults[key] = _schema_defaults(item)
        else:
            defaults[key] = item
    return defaults


def _deep_merge(target: dict, overrides: dict):
    """Merge overrides into target in place; nested sections merge key by key."""
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = value


class ConfigManager:
    """
    Process-wide configuration.

    Defaults come from config_schema.yaml next to this module, user overrides
    from a YAML file. Every component reads through the classmethods, so the
    singleton is created on first use.
    """
    _instance = None

    def __init__(self):
        self.config = None
        self.schema = None
        self.config_path = None

    @classmethod
    def initialize(cls, schema_path=None, config_path=None):
        """Create the singleton: load the schema, its defaults, then the user file."""
        if cls._instance is not None:
            raise Exception("This class is a singleton!")
        cls._instance = instance = cls()
        instance.schema = instance.load_config_schema(schema_path)
        instance.config = instance.load_default_config()
        instance.load_user_config(config_path or DEFAULT_CONFIG_PATH)

    @classmethod
    def get_instance(cls) -> 'ConfigManager':
        if cls._instance is None:
            cls.initialize()
        if cls._instance.config is None:  # type: ignore
            cls._instance.config = {}  # type: ignore
        return cls._instance  # type: ignore

    @classmethod
    def reset_instance(cls):
        """Drop the singleton so the next access reloads defaults."""
        cls._instance = None

    @classmethod
    def get_schema(cls):
        return cls.get_instance().schema

    @classmethod
    def get_config_value(cls, *keys):
        """Nested lookup, e.g. get_config_value('audio', 'remote_gain'). None when missing."""
        value = cls.get_instance().config
        for key in keys:
            if not isinstance(value, dict) or key not in value:
                return None
            value = value[key]
        return value

    @classmethod
    def get_value_or(cls, default, *keys):
        """Like get_config_value, but unset (None) values give default."""
        value = cls.get_config_value(*keys)
        return default if value is None else value

    @classmethod
    def set_config_value(cls, value, *keys):
        """Set a nested value, creating (or replacing non-dict) sections on the way."""
        instance = cls.get_instance()
        section = instance.config
        for key in keys[:-1]:
            if not isinstance(section.get(key), dict):
                section[key] = {}
            section = section[key]
        section[keys[-1]] = value

    @staticmethod
    def load_config_schema(schema_path=None):
        with open(schema_path or SCHEMA_PATH, 'r', encoding='utf-8') as file:
            return yaml.safe_load(file)

    def load_default_config(self):
        return _schema_defaults(self.schema)

    def _validate_config_value(self, value, schema_item, path):
        """True if value matches the leaf's type and options. None always passes."""
        if not _is_leaf(schema_item) or value is None:
            return True

        expected = schema_item['type']
        if expected in TYPE_MAP:
            # bool is an int subclass, never accept it as a number
            wrong_bool = isinstance(value, bool) and expected in ('int', 'float')
            if wrong_bool or not isinstance(value, TYPE_MAP[expected]):
                self.console_print(f"[!] Config validation warning: '{path}' should be {expected}, got {type(value).__name__}. Using default.")
                return False

        options = schema_item.get('options')
        if options is not None and value not in options:
            self.console_print(f"[!] Config validation warning: '{path}' value '{value}' not in allowed options {options}. Using default.")
            return False
        return True

    def _validate_config_section(self, user_section, schema_section, path=""):
        """Reset invalid user values to their schema defaults, recursively."""
        if not isinstance(user_section, dict) or not isinstance(schema_section, dict):
            return
        for key, schema_item in schema_section.items():
            if key not in user_section:
                continue
            current_path = f"{path}.{key}" if path else key
            if _is_leaf(schema_item):
                if not self._validate_config_value(user_section[key], schema_item, current_path):
                    user_section[key] = schema_item.get('value')
            else:
                self._validate_config_section(user_section[key], schema_item, current_path)

    def load_user_config(self, config_path=DEFAULT_CONFIG_PATH):
        """Validate the user file against the schema and merge it over the defaults."""
        self.config_path = config_path
        if not config_path or not os.path.isfile(config_path):
            return
        try:
            with open(config_path, 'r', encoding='utf-8') as file:
                user_config = yaml.safe_load(file) or {}
        except yaml.YAMLError:
            self.console_print("Error in configuration file. Using default configuration.")
            return
        if not isinstance(user_config, dict):
            self.console_print("Configuration file is not a mapping. Using default configuration.")
            return
        self._validate_config_section(user_config, self.schema)
        _deep_merge(self.config, user_config)

    @classmethod
    def save_config(cls, config_path=None):
        """Write the current configuration atomically (temp file, then rename)."""
        instance = cls.get_instance()
        filepath = Path(config_path or instance.config_path or DEFAULT_CONFIG_PATH)
        temp_path = filepath.with_suffix('.tmp')

        with open(temp_path, 'w', encoding='utf-8') as file:
            yaml.safe_dump(instance.config, file, default_flow_style=False)
            file.flush()
            os.fsync(file.fileno())

        # Windows may briefly lock the target (editor, antivirus)
        delay = 0.1
        for attempt in range(SAVE_RETRIES):
            try:
                temp_path.replace(filepath)
                return
            except PermissionError as e:
                if attempt == SAVE_RETRIES - 1:
                    temp_path.unlink(missing_ok=True)
                    raise RuntimeError(f"Failed to save config due to file lock: {e}")
                time.sleep(delay)
                delay *= 2

    @classmethod
    def reload_config(cls, config_path=None):
        """Back to defaults, then re-read the user file."""
        instance = cls.get_instance()
        instance.config = instance.load_default_config()
        instance.load_user_config(config_path or instance.config_path or DEFAULT_CONFIG_PATH)

    @classmethod
    def console_print(cls, message):
        """Print a status line if misc.print_to_terminal is on."""
        instance = cls._instance
        if instance is None or not instance.config:
            return
        if instance.config.get('misc', {}).get('print_to_terminal'):
            print(message)
