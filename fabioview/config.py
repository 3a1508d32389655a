"""Manages application configuration via an INI file."""

import configparser
import logging

from fabioview.logging_setup import get_app_data_dir

log = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "core": {
        "default_directory": "",
    },
    "cache": {
        # Each slot holds one decoded float32 frame, 16 MB for a 2048x2048 detector
        "slots": "10",
    },
    "decoder": {
        "backend": "pillow",  # Options: "pillow", "fabio"
    },
    "prefetch": {
        "radius": "2",
        "max_workers": "4",
    },
    "indexer": {
        # Numeric (Bruker) extensions are always accepted
        "extensions": ".edf,.cbf,.tif,.tiff,.img,.mccd,.mar3450,.mar2300,.sfrm,.gfrm,.png",
    },
}

class AppConfig:
    def __init__(self):
        self.config_path = get_app_data_dir() / "fabioview.ini"
        self.config = configparser.ConfigParser()
        self.load()

    def load(self):
        """Loads the config, creating it with defaults if it doesn't exist."""
        if not self.config_path.exists():
            log.info(f"Creating default config at {self.config_path}")
            self.config.read_dict(DEFAULT_CONFIG)
            self.save()
        else:
            log.info(f"Loading config from {self.config_path}")
            self.config.read(self.config_path)
            # Ensure all sections and keys exist
            for section, keys in DEFAULT_CONFIG.items():
                if not self.config.has_section(section):
                    self.config.add_section(section)
                for key, value in keys.items():
                    if not self.config.has_option(section, key):
                        self.config.set(section, key, value)
            self.save() # Save to add any missing keys

    def save(self):
        """Saves the current configuration to the INI file."""
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with self.config_path.open("w") as f:
                self.config.write(f)
            log.info(f"Saved config to {self.config_path}")
        except IOError as e:
            log.error(f"Failed to save config to {self.config_path}: {e}")

    def get(self, section, key, fallback=None):
        return self.config.get(section, key, fallback=fallback)

    def getint(self, section, key, fallback=None):
        return self.config.getint(section, key, fallback=fallback)

    def getlist(self, section, key, fallback=None):
        """Returns a comma separated option as a list of stripped strings."""
        value = self.config.get(section, key, fallback=None)
        if value is None:
            return fallback
        return [item.strip() for item in value.split(",") if item.strip()]

    def set(self, section, key, value):
        if not self.config.has_section(section):
            self.config.add_section(section)
        self.config.set(section, key, str(value))

# Global config instance
config = AppConfig()
