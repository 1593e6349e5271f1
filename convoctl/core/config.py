"""
API key storage.

Provider keys are kept encrypted in ~/.convoctl/config/ and exported into
the environment before completion requests so LiteLLM can pick them up.
"""

import json
import os
import re
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from rich.console import Console
from rich.table import Table

console = Console()

# Provider keys the completion client knows how to use
KNOWN_PROVIDER_KEYS = {
    "GEMINI_API_KEY": "Google AI Studio (Gemini)",
    "GOOGLE_API_KEY": "Google (Gemini, legacy name)",
    "GOOGLE_APPLICATION_CREDENTIALS": "Vertex AI service account file",
    "OPENAI_API_KEY": "OpenAI",
    "ANTHROPIC_API_KEY": "Anthropic",
    "OPENROUTER_API_KEY": "OpenRouter",
    "MISTRAL_API_KEY": "Mistral AI",
    "GROQ_API_KEY": "Groq",
    "DEEPSEEK_API_KEY": "DeepSeek",
    "OLLAMA_API_BASE": "Ollama (local) base URL",
}

_ENV_LINE = re.compile(r"^(?:export\s+)?([A-Z_][A-Z0-9_]*)=(.+)$")


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}...{value[-4:]}"


class ConfigManager:
    """
    Encrypted key/value store for provider credentials.

    Directory structure:
        ~/.convoctl/config/.key      # Fernet key
        ~/.convoctl/config/keys.enc  # Encrypted JSON map of keys
    """

    def __init__(self, base_dir: Path | None = None):
        if base_dir is None:
            base_dir = Path.home() / ".convoctl" / "config"

        self.base_dir = base_dir
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._fernet = Fernet(self._read_or_create_key())
        self._cache: dict[str, str] | None = None

    def _read_or_create_key(self) -> bytes:
        key_file = self.base_dir / ".key"
        if key_file.exists():
            return key_file.read_bytes()

        key = Fernet.generate_key()
        key_file.write_bytes(key)
        try:
            key_file.chmod(0o600)
        except OSError:
            pass
        return key

    @property
    def keys_path(self) -> Path:
        return self.base_dir / "keys.enc"

    def _load_keys(self) -> dict[str, str]:
        """Decrypt the stored keys. An unreadable store counts as empty."""
        if self._cache is not None:
            return self._cache

        if not self.keys_path.exists():
            self._cache = {}
            return self._cache

        try:
            self._cache = json.loads(self._fernet.decrypt(self.keys_path.read_bytes()))
        except (InvalidToken, json.JSONDecodeError):
            self._cache = {}
        return self._cache

    def _save_keys(self, keys: dict[str, str]) -> None:
        self.keys_path.write_bytes(self._fernet.encrypt(json.dumps(keys).encode()))
        try:
            self.keys_path.chmod(0o600)
        except OSError:
            pass
        self._cache = keys

    def get(self, name: str) -> str | None:
        """Value of a key. The environment wins over the store."""
        if name in os.environ:
            return os.environ[name]
        return self._load_keys().get(name)

    def set(self, name: str, value: str) -> None:
        keys = dict(self._load_keys())
        keys[name] = value
        self._save_keys(keys)

    def delete(self, name: str) -> bool:
        """
        Delete a stored key.

        Returns:
            True if deleted, False if not found
        """
        keys = dict(self._load_keys())
        if name not in keys:
            return False
        del keys[name]
        self._save_keys(keys)
        return True

    def list_keys(self) -> list[str]:
        return sorted(self._load_keys())

    def load_into_environment(self) -> int:
        """
        Export stored keys that are not already set in the environment.

        Returns:
            Number of keys exported
        """
        loaded = 0
        for name, value in self._load_keys().items():
            if name not in os.environ:
                os.environ[name] = value
                loaded += 1
        return loaded

    def set_from_file(self, file_path: str | Path) -> int:
        """
        Import keys from a .env file (KEY=value lines, optional `export`, # comments).

        Returns:
            Number of keys imported

        Raises:
            FileNotFoundError: If the file does not exist
        """
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        imported = 0
        with open(path) as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                match = _ENV_LINE.match(line)
                if not match:
                    continue
                name, value = match.groups()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                    value = value[1:-1]
                self.set(name, value)
                imported += 1
        return imported

    def show_status(self) -> None:
        """Print a table of stored keys."""
        keys = self._load_keys()
        if not keys:
            console.print("[dim]No API keys configured[/dim]")
            console.print("Run [cyan]convoctl config set KEY_NAME[/cyan] to add one")
            return

        table = Table(title="Configured API Keys")
        table.add_column("Key", style="cyan")
        table.add_column("Provider")
        table.add_column("Value", style="dim")
        table.add_column("Status")

        for name in sorted(keys):
            if name in os.environ and os.environ[name] != keys[name]:
                status = "[yellow]env override[/yellow]"
            else:
                status = "[green]stored[/green]"
            table.add_row(name, KNOWN_PROVIDER_KEYS.get(name, "Custom"), _mask(keys[name]), status)

        console.print(table)
        console.print(f"[dim]Config location: {self.base_dir}[/dim]")


_config_manager: ConfigManager | None = None


def get_config_manager() -> ConfigManager:
    """Get the global config manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def load_config() -> int:
    """
    Export stored keys into the environment.

    Call this before the first completion request.

    Returns:
        Number of keys loaded
    """
    return get_config_manager().load_into_environment()
