# --- ppaper_lib/services/config_service.py ---
import configparser
import logging
import os

log = logging.getLogger("ppaper.config")

ENV_OVERRIDES = {
    "LLM_API_KEY": ("LLM", "api_key"),
    "LLM_API_URL": ("LLM", "url"),
    "LLM_MODEL": ("LLM", "model"),
}
TRUE_VALUES = ("1", "true", "yes", "on")


def _as_bool(value) -> bool:
    return str(value).strip().lower() in TRUE_VALUES


class ConfigService:
    """Manages reading from and writing to the ppaper.cfg file."""

    def __init__(self, config_path: str):
        self.config_path = config_path
        self.defaults = {
            "LLM": {
                "url": "https://api.deepseek.com",
                "model": "deepseek-chat",
                "api_key": "",
                "max_tokens": "4096",
                "temperature": "0.1",
                "timeout": "60",
            },
            "Parsing": {
                "mode": "local",
                "max_chunk_tokens": "3000",
                "overlap_tokens": "200",
                "front_matter": "heuristic",
                "max_metadata_lines": "80",
                "translate": "false",
                "fix_inline_math": "false",
                "filter_noise": "false",
                "min_merge_tokens": "15",
            },
            "Jobs": {
                "workers": "1",
            },
            "Storage": {
                "data_dir": "~/.ppaper",
                "image_dir": "~/.ppaper/images",
            },
        }

    def get_settings(self) -> dict:
        """
        Reads settings from the config file, applying defaults if missing.
        Environment variables override the file for the LLM credentials.
        """
        config = configparser.ConfigParser()
        # Apply defaults first
        for section, values in self.defaults.items():
            config[section] = values

        # Read existing file to override defaults
        if not config.read(self.config_path):
            log.info("Config file not found at %s. Creating with defaults.", self.config_path)
            self.save_settings(self._config_to_dict(config))

        settings = self._config_to_dict(config)
        for env_name, (section, key) in ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value:
                settings.setdefault(section, {})[key] = value
                log.debug("Setting [%s] %s taken from $%s.", section, key, env_name)
        return settings

    def save_settings(self, settings: dict):
        """Saves a dictionary of settings to the config file."""
        config = configparser.ConfigParser()
        for section, values in settings.items():
            config[section] = {k: str(v) for k, v in values.items()}

        try:
            config_dir = os.path.dirname(self.config_path)
            if config_dir:
                os.makedirs(config_dir, exist_ok=True)
            with open(self.config_path, "w") as configfile:
                config.write(configfile)
            log.info("Settings successfully saved to %s", self.config_path)
        except IOError as e:
            log.error("Failed to write settings to %s: %s", self.config_path, e)

    def get_parse_options(self, settings: dict | None = None) -> dict:
        """Returns the [Parsing], [Jobs] and [Storage] values with their real types."""
        settings = settings or self.get_settings()
        parsing = settings.get("Parsing", {})
        defaults = self.defaults["Parsing"]

        def value(key):
            return parsing.get(key, defaults[key])

        mode = value("mode").strip().lower()
        if mode not in ("local", "llm"):
            log.warning("Unknown parsing mode '%s', using 'local'.", mode)
            mode = "local"
        front_matter = value("front_matter").strip().lower()
        if front_matter not in ("heuristic", "llm"):
            front_matter = "heuristic"

        storage = settings.get("Storage", {})
        return {
            "mode": mode,
            "max_chunk_tokens": max(1, int(value("max_chunk_tokens"))),
            "overlap_tokens": max(0, int(value("overlap_tokens"))),
            "front_matter": front_matter,
            "max_metadata_lines": int(value("max_metadata_lines")),
            "translate": _as_bool(value("translate")),
            "fix_inline_math": _as_bool(value("fix_inline_math")),
            "filter_noise": _as_bool(value("filter_noise")),
            "min_merge_tokens": int(value("min_merge_tokens")),
            "workers": max(1, int(settings.get("Jobs", {}).get("workers", "1"))),
            "data_dir": os.path.expanduser(
                storage.get("data_dir", self.defaults["Storage"]["data_dir"])
            ),
            "image_dir": os.path.expanduser(
                storage.get("image_dir", self.defaults["Storage"]["image_dir"])
            ),
        }

    def _config_to_dict(self, config: configparser.ConfigParser) -> dict:
        """Converts a ConfigParser object to a nested dictionary."""
        return {s: dict(config.items(s)) for s in config.sections()}
