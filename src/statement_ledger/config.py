import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Mapping, Optional, Tuple

from .domain.models import FeeContract
from .errors import ConfigurationError
from .logging import get_logger

log = get_logger("config")

PROVIDER_GEMINI = "gemini"
PROVIDER_DEEPSEEK = "deepseek"
PROVIDER_OPENROUTER = "openrouter"
PROVIDER_OPENAI = "openai"

# Base URLs for OpenAI-compatible providers; None means the SDK default.
OPENAI_COMPATIBLE_BASE_URLS: Dict[str, Optional[str]] = {
    PROVIDER_DEEPSEEK: "https://api.deepseek.com",
    PROVIDER_OPENROUTER: "https://openrouter.ai/api/v1",
    PROVIDER_OPENAI: None,
}

# Env variables holding comma-separated key lists, per provider, in lookup order.
_KEY_VARIABLES: Dict[str, Tuple[str, ...]] = {
    PROVIDER_GEMINI: ("GEMINI_API_KEYS", "GEMINI_API_KEY", "API_KEY"),
    PROVIDER_DEEPSEEK: ("DEEPSEEK_API_KEYS", "DEEPSEEK_API_KEY"),
    PROVIDER_OPENROUTER: ("OPEN_ROUTER_API_KEY", "OPENROUTER_API_KEY"),
    PROVIDER_OPENAI: ("OPENAI_API_KEY",),
}

DEFAULT_MODEL_PRIORITY = "gemini:gemini-2.5-pro:vision,gemini:gemini-2.5-flash:vision,deepseek:deepseek-chat"

CHUNK_STRATEGIES: Tuple[str, ...] = ("ALL", "200", "100", "50", "30", "20")


@dataclass(frozen=True)
class ModelSpec:
    provider: str
    model: str
    vision: bool = False

    @property
    def label(self) -> str:
        name = self.model.lower()
        if self.provider == PROVIDER_GEMINI:
            if "pro" in name:
                return "Gemini Pro"
            if "flash" in name:
                return "Gemini Flash"
            return "Gemini"
        if self.provider == PROVIDER_DEEPSEEK:
            return "DeepSeek"
        return f"{self.provider}:{self.model}"


@dataclass(frozen=True)
class Credential:
    provider: str
    api_key: str = field(repr=False)
    ordinal: int = 1  # 1-based position within the provider's key list


@dataclass(frozen=True)
class DispatchSettings:
    max_retries: int = 3
    backoff_seconds: float = 2.0
    timeout_seconds: float = 120.0


@dataclass(frozen=True)
class LedgerSettings:
    models: Tuple[ModelSpec, ...]
    credentials: Tuple[Credential, ...]
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    header_rows: int = 20
    inter_chunk_delay: float = 0.5
    tolerance: Decimal = Decimal("1")
    fee_contract: FeeContract = FeeContract.GROSS
    locale: str = "en"

    def require_credentials(self) -> None:
        if not self.credentials:
            raise ConfigurationError(
                "No API key configured. Set GEMINI_API_KEYS and/or DEEPSEEK_API_KEY in env or .env."
            )


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    This makes running tools from subdirectories still find the
    repository-level `.env`.
    """
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    """Minimal .env reader.

    - Reads key=value pairs, ignores comments (#/;) and blank lines.
    - Trims single/double quotes around the value.
    - Returns mapping; does not mutate environment.
    """
    env: Dict[str, str] = {}
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return env
    try:
        with open(path, "r", encoding="utf-8") as f:
            for raw in f:
                line = raw.strip()
                if not line or line.startswith("#") or line.startswith(";"):
                    continue
                if "=" not in line:
                    continue
                k, v = line.split("=", 1)
                k = k.strip()
                v = v.strip()
                if (v.startswith('"') and v.endswith('"')) or (v.startswith("'") and v.endswith("'")):
                    v = v[1:-1]
                env[k] = v.strip()
        log.debug(f"Loaded {len(env)} key(s) from .env at {path}")
    except OSError as e:
        log.warning(f"Failed reading .env: {e}")
    return env


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _is_placeholder(key: str) -> bool:
    # Template values like "VITE_API_KEY" or "your-key-here" left in .env files
    upper = key.upper()
    return upper.startswith("VITE_") or upper.startswith("YOUR") or upper.endswith("_HERE")


def parse_model_priority(value: str) -> Tuple[ModelSpec, ...]:
    """Parse 'provider:model[:vision]' entries, comma separated, highest priority first."""
    specs: List[ModelSpec] = []
    for entry in _split_list(value):
        parts = [p.strip() for p in entry.split(":")]
        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise ConfigurationError(f"Invalid model entry {entry!r}; expected provider:model[:vision]")
        provider = parts[0].lower()
        if provider not in _KEY_VARIABLES:
            raise ConfigurationError(f"Unknown provider {provider!r} in model entry {entry!r}")
        vision = len(parts) > 2 and parts[2].lower() in {"vision", "v", "1", "true"}
        specs.append(ModelSpec(provider=provider, model=parts[1], vision=vision))
    if not specs:
        raise ConfigurationError("Model priority list is empty")
    return tuple(specs)


def load_credentials(values: Mapping[str, str]) -> Tuple[Credential, ...]:
    """Build the ordered credential pool from env-style values."""
    creds: List[Credential] = []
    for provider, variables in _KEY_VARIABLES.items():
        seen: List[str] = []
        for var in variables:
            for key in _split_list(values.get(var)):
                if key in seen or _is_placeholder(key):
                    continue
                seen.append(key)
        for ordinal, key in enumerate(seen, 1):
            creds.append(Credential(provider=provider, api_key=key, ordinal=ordinal))
        if seen:
            log.info("Loaded %d %s key(s)", len(seen), provider)
    return tuple(creds)


def _float(values: Mapping[str, str], name: str, default: float) -> float:
    raw = values.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning("%s=%r is not a number; using %s", name, raw, default)
        return default


def _int(values: Mapping[str, str], name: str, default: int) -> int:
    return int(_float(values, name, float(default)))


def load_settings(dotenv_dir: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> LedgerSettings:
    """Resolve settings from the environment, falling back to a `.env` file.

    Environment variables take precedence over `.env` values.
    """
    values: Dict[str, str] = dict(_read_dotenv(dotenv_dir or os.getcwd()))
    values.update(os.environ if environ is None else environ)

    models = parse_model_priority(values.get("LEDGER_MODEL_PRIORITY") or DEFAULT_MODEL_PRIORITY)
    credentials = load_credentials(values)

    tolerance_raw = values.get("LEDGER_TOLERANCE") or "1"
    try:
        tolerance = Decimal(tolerance_raw)
    except InvalidOperation:
        log.warning("LEDGER_TOLERANCE=%r is invalid; using 1", tolerance_raw)
        tolerance = Decimal("1")

    contract_raw = (values.get("LEDGER_FEE_CONTRACT") or FeeContract.GROSS.value).strip().lower()
    try:
        contract = FeeContract(contract_raw)
    except ValueError:
        log.warning("LEDGER_FEE_CONTRACT=%r is invalid; expected gross/net. Falling back to gross.", contract_raw)
        contract = FeeContract.GROSS

    settings = LedgerSettings(
        models=models,
        credentials=credentials,
        dispatch=DispatchSettings(
            max_retries=_int(values, "LEDGER_MAX_RETRIES", 3),
            backoff_seconds=_float(values, "LEDGER_BACKOFF_SECONDS", 2.0),
            timeout_seconds=_float(values, "LEDGER_TIMEOUT", 120.0),
        ),
        header_rows=_int(values, "LEDGER_HEADER_ROWS", 20),
        inter_chunk_delay=_float(values, "LEDGER_CHUNK_DELAY_MS", 500.0) / 1000.0,
        tolerance=tolerance,
        fee_contract=contract,
        locale=(values.get("LEDGER_LOCALE") or "en").strip().lower(),
    )
    log.debug(
        "Settings resolved: models=%s credentials=%d contract=%s",
        [m.label for m in settings.models],
        len(settings.credentials),
        settings.fee_contract.value,
    )
    return settings
