"""YAML configuration files for FrameDiffusion runs.

Layers, each overriding the one before:

* built-in defaults from ``CONFIG_SCHEMA``
* ``~/.framediffusion/config.yaml``
* ``.framediffusion.yaml`` in the working directory
* a file passed with ``--config``
* explicit command line options

Problems found while reading are collected as :class:`ValidationError`
entries so ``framediffusion config show`` can print a file that does not
validate; ``render`` calls :meth:`ConfigFileManager.raise_for_errors`.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..errors import ConfigurationError

# Keys of a gpu_limits / cpu_limits block; omitted keys keep the class defaults
LIMITS_SCHEMA: Dict[str, Dict[str, Any]] = {
    "max_queue_depth": {"type": int, "range": (1, 1024)},
    "recency_window": {"type": float, "range": (0, 3600)},
    "busy_threshold": {"type": int, "range": (0, 1024)},
    "request_timeout": {"type": float, "range": (1, 86400)},
}

# Schema for the sections the scheduler understands
CONFIG_SCHEMA: Dict[str, Dict[str, Dict[str, Any]]] = {
    "scheduler": {
        "gpu_ports": {"type": (str, list), "default": "9000"},
        "cpu_ports": {"type": (str, list), "default": "9010"},
        "host": {"type": str, "default": "localhost"},
        "max_concurrent": {"type": int, "range": (1, 256), "default": None},
        "max_retries": {"type": int, "range": (1, 20), "default": 3},
        "gpu_retry_backoff": {"type": float, "range": (0, 3600), "default": 10},
        "cpu_retry_backoff": {"type": float, "range": (0, 3600), "default": 120},
        "min_output_bytes": {"type": int, "range": (0, 10 * 1024 * 1024), "default": 1024},
        "verify_images": {"type": bool, "default": True},
        "poll_interval": {"type": float, "range": (0.01, 60), "default": 2},
        "probe_timeout": {"type": float, "range": (0.01, 60), "default": 2},
        "dispatch_delay": {"type": float, "range": (0, 60), "default": None},
        "health_cache_ttl": {"type": float, "range": (0, 3600), "default": None},
        "admission_poll_interval": {"type": float, "range": (0.001, 60), "default": None},
        "hybrid_soft_threshold": {"type": int, "range": (0, 64), "default": 2},
        "gpu_limits": {"type": dict, "keys": LIMITS_SCHEMA, "default": None},
        "cpu_limits": {"type": dict, "keys": LIMITS_SCHEMA, "default": None},
    },
    "render": {
        "model": {"type": str, "default": "sd-v1-5.safetensors"},
        "negative_prompt": {"type": str, "default": ""},
        "num_inference_steps": {"type": int, "range": (1, 500), "default": 46},
        "guidance_scale": {"type": float, "range": (0.1, 50), "default": 7.5},
        "prompt_strength": {"type": float, "range": (0, 1), "default": 0.5},
        "width": {"type": int, "range": (8, 4096), "default": 512},
        "height": {"type": int, "range": (8, 4096), "default": 512},
        "smoothing_strength": {"type": float, "range": (0, 1), "default": 0.3},
        "sampler_name": {"type": str, "default": "euler_a"},
        "output_format": {"type": str, "choices": ["jpeg", "png", "webp"], "default": "jpeg"},
        "output_quality": {"type": int, "range": (1, 100), "default": 95},
        "output_dir": {"type": str, "default": "./output"},
    },
    "logging": {
        "log_level": {"type": str, "choices": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], "default": "INFO"},
        "log_format": {"type": str, "choices": ["text", "json"], "default": "text"},
        "log_file": {"type": str, "default": None},
    },
}

# Written by `framediffusion config init`
DEFAULT_CONFIG_TEMPLATE = """\
# FrameDiffusion Configuration File
# Location: ~/.framediffusion/config.yaml or .framediffusion.yaml (project-local)
#
# Command line options override anything set here.
# Project-local config (.framediffusion.yaml) overrides user config.

# Render backends and scheduling
scheduler:
  # Easy Diffusion servers, comma separated ports
  gpu_ports: "9000"
  cpu_ports: "9010"
  host: localhost

  # System-wide cap on in-flight renders (omit to auto-detect from hardware)
  # max_concurrent: 12

  # Total attempts per frame
  max_retries: 3

  # Seconds to wait before a retry round
  gpu_retry_backoff: 10
  cpu_retry_backoff: 120

  # Outputs smaller than this are treated as failed renders
  min_output_bytes: 1024

  # Per-class admission limits
  # gpu_limits:
  #   max_queue_depth: 15
  #   recency_window: 5
  #   busy_threshold: 8
  #   request_timeout: 120
  # cpu_limits:
  #   max_queue_depth: 1
  #   recency_window: 60
  #   busy_threshold: 0
  #   request_timeout: 600

# Parameters sent with every frame
render:
  model: sd-v1-5.safetensors
  num_inference_steps: 46
  guidance_scale: 7.5
  prompt_strength: 0.5
  width: 512
  height: 512
  sampler_name: euler_a
  output_format: jpeg
  output_quality: 95
  output_dir: ./output

  # Sequential mode: prompt strength reduction when rendering from the
  # previous output
  smoothing_strength: 0.3

logging:
  log_level: INFO
  log_format: text
  # log_file: ~/.framediffusion/framediffusion.log

# Named profiles override the render section
# Use with: framediffusion render --profile <name>
profiles:
  # Quick low-step preview
  preview:
    num_inference_steps: 20
    width: 384
    height: 384

  # Stronger restyle, less temporal coherence
  stylize:
    prompt_strength: 0.7
    guidance_scale: 9.0
"""

# CLI argument name -> (section, config key)
CLI_TO_CONFIG_MAP = {
    "gpu_ports": ("scheduler", "gpu_ports"),
    "cpu_ports": ("scheduler", "cpu_ports"),
    "host": ("scheduler", "host"),
    "max_concurrent": ("scheduler", "max_concurrent"),
    "max_retries": ("scheduler", "max_retries"),
    "min_output_bytes": ("scheduler", "min_output_bytes"),
    "model": ("render", "model"),
    "negative_prompt": ("render", "negative_prompt"),
    "steps": ("render", "num_inference_steps"),
    "guidance_scale": ("render", "guidance_scale"),
    "prompt_strength": ("render", "prompt_strength"),
    "width": ("render", "width"),
    "height": ("render", "height"),
    "seed": ("render", "seed"),
    "smoothing_strength": ("render", "smoothing_strength"),
    "sampler": ("render", "sampler_name"),
    "output_format": ("render", "output_format"),
    "quality": ("render", "output_quality"),
    "output_dir": ("render", "output_dir"),
    "session_id": ("render", "session_id"),
    "log_level": ("logging", "log_level"),
    "log_format": ("logging", "log_format"),
    "log_file": ("logging", "log_file"),
}



def builtin_defaults() -> Dict[str, Any]:
    """Schema defaults, leaving out keys whose default is None."""
    config: Dict[str, Any] = {
        section: {key: spec["default"] for key, spec in keys.items() if spec.get("default") is not None}
        for section, keys in CONFIG_SCHEMA.items()
    }
    config["profiles"] = {}
    return config


def merge_layers(lower: Dict[str, Any], upper: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively overlay ``upper`` on ``lower`` without mutating either."""
    merged = dict(lower)
    for key, value in upper.items():
        below = merged.get(key)
        merged[key] = merge_layers(below, value) if isinstance(below, dict) and isinstance(value, dict) else value
    return merged


def check_value(value: Any, spec: Dict[str, Any]) -> Optional[str]:
    """Return a problem description, or None if ``value`` fits ``spec``."""
    wanted = spec.get("type")
    # ints are fine where floats are expected, bools are not
    int_for_float = wanted is float and isinstance(value, int) and not isinstance(value, bool)
    if wanted and not isinstance(value, wanted) and not int_for_float:
        wanted_name = getattr(wanted, "__name__", None) or " or ".join(t.__name__ for t in wanted)
        return f"Expected {wanted_name}, got {type(value).__name__}"

    if "choices" in spec and value not in spec["choices"]:
        return f"Invalid value. Must be one of: {spec['choices']}"

    if "range" in spec and isinstance(value, (int, float)):
        low, high = spec["range"]
        if value < low or value > high:
            return f"Value must be between {low} and {high}"
    return None


@dataclass
class ValidationError:
    """One problem in a config file or merged section."""
    path: str
    message: str
    value: Any = None

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass
class ConfigFileManager:
    """Reads, layers and writes FrameDiffusion config files.

    Attributes:
        user_config_path: Per-user file, ``~/.framediffusion/config.yaml``
        project_config_path: File next to the frames, ``.framediffusion.yaml``
        loaded_config: Result of the last :meth:`load`
    """

    user_config_path: Path = field(default_factory=lambda: Path.home() / ".framediffusion" / "config.yaml")
    project_config_path: Path = field(default_factory=lambda: Path.cwd() / ".framediffusion.yaml")
    loaded_config: Dict[str, Any] = field(default_factory=dict)
    _validation_errors: List[ValidationError] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.user_config_path = Path(self.user_config_path)
        self.project_config_path = Path(self.project_config_path)

    def load(self, extra_path: Optional[Path] = None) -> Dict[str, Any]:
        """Read every layer that exists and validate the result.

        A missing user or project file is skipped. A missing ``extra_path``
        raises :class:`ConfigurationError`, since it was asked for explicitly.
        """
        self._validation_errors = []
        layers = [self.user_config_path, self.project_config_path]
        if extra_path is not None:
            extra_path = Path(extra_path)
            if not extra_path.exists():
                raise ConfigurationError(f"Config file not found: {extra_path}")
            layers.append(extra_path)

        config = builtin_defaults()
        for layer in layers:
            data = self._read_layer(layer) if layer.exists() else None
            if data:
                config = merge_layers(config, data)

        self._check_sections(config)
        self.loaded_config = config
        return config

    def _read_layer(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            self._report(str(path), f"YAML parsing error: {e}")
            return None
        except OSError as e:
            self._report(str(path), f"Failed to read file: {e}")
            return None

        if not isinstance(data, dict):
            self._report(str(path), "Top level must be a mapping")
            return None
        return data

    def _report(self, path: str, message: str, value: Any = None) -> None:
        self._validation_errors.append(ValidationError(path=path, message=message, value=value))

    def _check_sections(self, config: Dict[str, Any]) -> None:
        for section, keys in CONFIG_SCHEMA.items():
            self._check_mapping(section, config.get(section, {}), keys)

    def _check_mapping(
        self, path: str, values: Any, keys: Dict[str, Dict[str, Any]], strict: bool = False
    ) -> None:
        if not isinstance(values, dict):
            self._report(path, "Section must be a mapping", values)
            return
        if strict:
            for key in values:
                if key not in keys:
                    self._report(f"{path}.{key}", f"Unknown key. Must be one of: {list(keys)}")

        for key, spec in keys.items():
            value = values.get(key)
            if value is None:
                continue
            problem = check_value(value, spec)
            if problem:
                self._report(f"{path}.{key}", problem, value)
            elif "keys" in spec:
                self._check_mapping(f"{path}.{key}", value, spec["keys"], strict=True)

    def get_validation_errors(self) -> List[ValidationError]:
        """Problems found by the last :meth:`load`."""
        return self._validation_errors

    def raise_for_errors(self) -> None:
        if self._validation_errors:
            details = "; ".join(str(error) for error in self._validation_errors)
            raise ConfigurationError(f"Invalid configuration: {details}")

    def get(self, key_path: str, default: Any = None) -> Any:
        """Look up a dotted key such as ``"scheduler.max_retries"``."""
        node: Any = self.loaded_config
        for part in key_path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def list_profiles(self) -> List[str]:
        profiles = self.loaded_config.get("profiles")
        return list(profiles) if isinstance(profiles, dict) else []

    def get_profile(self, profile_name: str) -> Optional[Dict[str, Any]]:
        """The render section with profile ``profile_name`` laid over it.

        Returns None when no such profile is defined.
        """
        if profile_name not in self.list_profiles():
            return None
        overrides = self.loaded_config["profiles"][profile_name]
        render = dict(self.loaded_config.get("render") or {})
        if isinstance(overrides, dict):
            render.update(overrides)
        return render

    def merge_with_cli_args(self, cli_args: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        """Lay command line values over the loaded sections.

        ``cli_args`` is ``vars(args)``; options left at None keep the file
        value. A ``profile`` option is applied to ``render`` first, so an
        explicit ``--steps`` still beats the profile.
        """
        sections: Dict[str, Dict[str, Any]] = {
            name: dict(self.loaded_config.get(name) or {}) for name in ("scheduler", "render", "logging")
        }

        profile_name = cli_args.get("profile")
        if profile_name:
            profiled = self.get_profile(profile_name)
            if profiled is None:
                raise ConfigurationError(
                    f"Unknown profile '{profile_name}'. Available: {self.list_profiles()}"
                )
            sections["render"] = profiled

        for option, (section, key) in CLI_TO_CONFIG_MAP.items():
            value = cli_args.get(option)
            if value is not None:
                sections[section][key] = value
        return sections

    def config_exists(self) -> bool:
        return any(path.exists() for path in (self.user_config_path, self.project_config_path))

    def init_config(self, target: str = "user", force: bool = False) -> Path:
        """Write the commented starter file and return its path.

        ``target`` is ``"user"`` or ``"project"``. An existing file is only
        replaced when ``force`` is set.
        """
        targets = {"user": self.user_config_path, "project": self.project_config_path}
        if target not in targets:
            raise ConfigurationError(f"Unknown config target '{target}'")
        path = targets[target]

        if path.exists() and not force:
            raise ConfigurationError(f"Config file already exists: {path} (use --force to overwrite)")

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
        return path

    def show_config(self) -> str:
        """The merged configuration as YAML."""
        return yaml.safe_dump(self.loaded_config, default_flow_style=False, sort_keys=False)
