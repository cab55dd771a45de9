"""Template and variable loading for goldimage builds."""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from goldimage.boot import parse_boot_command
from goldimage.constants import (
    ARCH_ALIASES,
    BUILD_NAME_RE,
    DEFAULT_BOOT_KEY_INTERVAL,
    DEFAULT_BOOT_WAIT,
    DEFAULT_MANIFEST_NAME,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_SSH_POLL_INTERVAL,
    DEFAULT_SSH_TIMEOUT,
    MASK,
    SUPPORTED_ARCHES,
    SUPPORTED_DISK_FORMATS,
    SUPPORTED_FIRMWARE,
    VAR_ENV_PREFIX,
    VAR_REF_RE,
    _SENSITIVE_FIELDS,
)
from goldimage.exceptions import ConfigurationError
from goldimage.media import parse_checksum
from goldimage.models import BuildConfig, ConnectionCredentials, HardwareSpec, ProvisionerSpec
from goldimage.utils import log, mask_values, parse_duration, validate_disk_size

TEMPLATE_SECTIONS = {"variables", "sensitive", "source", "builds", "provisioner", "post"}

SOURCE_KEYS = {
    "name", "artifact_id", "media", "media_checksum",
    "memory", "cpus", "disk_size", "arch", "firmware", "network", "disk_format",
    "http_directory", "http_bind_address", "http_advertise_address", "bootstrap_document",
    "boot_wait", "boot_key_interval", "boot_command", "boot_reinject_attempts", "boot_reinject_after",
    "ssh_username", "ssh_password", "ssh_private_key_file", "ssh_port", "ssh_timeout", "ssh_poll_interval",
    "shutdown_command", "shutdown_timeout", "metadata",
}
BUILD_ONLY_KEYS = {"provisioner"}
PROVISIONER_KEYS = {"executable", "arguments", "working_dir", "env", "timeout"}
POST_KEYS = {"output_dir", "manifest"}


@dataclasses.dataclass
class Template:
    path: Path
    variables: Dict[str, Any]
    sensitive: Tuple[str, ...]
    source: Dict[str, Any]
    builds: List[Dict[str, Any]]
    provisioner: Optional[Dict[str, Any]]
    post: Dict[str, Any]

    @property
    def base_dir(self) -> Path:
        return self.path.parent


def _load_yaml(path: Path, what: str) -> Any:
    if not path.exists():
        raise ConfigurationError(f"{what} not found: {path}")
    try:
        return yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"{what} {path} is not valid YAML: {exc}") from exc


def _mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"'{where}' must be a mapping")
    return dict(value)


def _reject_unknown(data: Mapping[str, Any], allowed: Iterable[str], where: str) -> None:
    unknown = set(data) - set(allowed)
    if unknown:
        raise ConfigurationError(f"Unknown key(s) in {where}: {', '.join(sorted(unknown))}")


def load_template(path: Path) -> Template:
    """
    Read a build template.

    Variables are declared either as 'name: default' or as a mapping
    'name: {default: ..., sensitive: true}'. A variable whose default is null
    is required: it must be supplied before any value referencing it is used.
    """
    path = Path(path)
    data = _load_yaml(path, "Template")
    if not isinstance(data, dict):
        raise ConfigurationError(f"Template {path} must be a mapping")
    _reject_unknown(data, TEMPLATE_SECTIONS, f"template {path}")

    variables: Dict[str, Any] = {}
    sensitive = [str(name) for name in data.get("sensitive") or ()]
    for name, declared in _mapping(data.get("variables"), "variables").items():
        if isinstance(declared, dict):
            _reject_unknown(declared, {"default", "sensitive", "description"}, f"variable '{name}'")
            variables[name] = declared.get("default")
            if declared.get("sensitive"):
                sensitive.append(name)
        else:
            variables[name] = declared
    for name in sensitive:
        if name not in variables:
            raise ConfigurationError(f"Sensitive variable '{name}' is not declared in 'variables'")

    source = _mapping(data.get("source"), "source")
    _reject_unknown(source, SOURCE_KEYS, "source")

    builds = data.get("builds")
    if builds is None:
        builds = [{}]
    if not isinstance(builds, list) or not builds:
        raise ConfigurationError("'builds' must be a non-empty list")
    for index, variant in enumerate(builds):
        if not isinstance(variant, dict):
            raise ConfigurationError(f"builds[{index}] must be a mapping")
        _reject_unknown(variant, SOURCE_KEYS | BUILD_ONLY_KEYS, f"builds[{index}]")

    provisioner = data.get("provisioner")
    if provisioner is not None:
        provisioner = _mapping(provisioner, "provisioner")
        _reject_unknown(provisioner, PROVISIONER_KEYS, "provisioner")

    post = _mapping(data.get("post"), "post")
    _reject_unknown(post, POST_KEYS, "post")

    return Template(
        path=path,
        variables=variables,
        sensitive=tuple(dict.fromkeys(sensitive)),
        source=source,
        builds=[dict(b) for b in builds],
        provisioner=provisioner,
        post=post,
    )


def load_var_files(paths: Sequence[Path]) -> Dict[str, Any]:
    """Merge YAML var files; a later file wins over an earlier one."""
    merged: Dict[str, Any] = {}
    for path in paths:
        data = _load_yaml(Path(path), "Var file")
        if data is None:
            continue
        if not isinstance(data, dict):
            raise ConfigurationError(f"Var file {path} must be a mapping of variable names to values")
        merged.update(data)
    return merged


def parse_var_overrides(items: Sequence[str]) -> Dict[str, str]:
    """Parse repeated --var NAME=VALUE arguments."""
    overrides: Dict[str, str] = {}
    for item in items or ():
        name, sep, value = item.partition("=")
        name = name.strip()
        if not sep or not name:
            raise ConfigurationError(f"Invalid --var '{item}'. Use NAME=VALUE")
        overrides[name] = value
    return overrides


def resolve_variables(
    template: Template,
    var_files: Optional[Mapping[str, Any]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """
    Final variable values. Highest precedence first: --var, var files,
    GOLDIMAGE_VAR_<NAME> from the environment, template defaults.
    """
    environ = os.environ if environ is None else environ
    values = dict(template.variables)
    for name in template.variables:
        env_value = environ.get(f"{VAR_ENV_PREFIX}{name}")
        if env_value is not None:
            values[name] = env_value
    for name, value in (var_files or {}).items():
        if name not in template.variables:
            log("WARN", f"Var file sets undeclared variable '{name}'; ignoring it")
            continue
        values[name] = value
    for name, value in (overrides or {}).items():
        if name not in template.variables:
            raise ConfigurationError(f"--var {name}: variable is not declared in the template")
        values[name] = value
    return values


def interpolate(value: Any, variables: Mapping[str, Any], where: str = "template") -> Any:
    """
    Replace ${var.NAME} references in strings, recursively.

    A string that is exactly one reference takes the variable's value as is,
    so numbers and lists survive; otherwise the value is formatted into text.
    """
    if isinstance(value, dict):
        return {k: interpolate(v, variables, f"{where}.{k}") for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate(v, variables, f"{where}[{i}]") for i, v in enumerate(value)]
    if not isinstance(value, str):
        return value

    def lookup(name: str) -> Any:
        if name not in variables:
            raise ConfigurationError(f"{where}: undefined variable '{name}'")
        resolved = variables[name]
        if resolved is None:
            raise ConfigurationError(f"{where}: variable '{name}' is required but has no value")
        return resolved

    whole = VAR_REF_RE.fullmatch(value)
    if whole:
        return lookup(whole.group(1))
    return VAR_REF_RE.sub(lambda m: str(lookup(m.group(1))), value)


def _int(raw: Any, name: str, minimum: int = 0) -> int:
    if isinstance(raw, bool):
        raise ConfigurationError(f"{name} must be an integer (got {raw!r})")
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be an integer (got {raw!r})") from exc
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum} (got {value})")
    return value


def _path(raw: Optional[Any], base_dir: Path) -> Optional[Path]:
    if raw in (None, ""):
        return None
    path = Path(os.path.expanduser(str(raw)))
    return path if path.is_absolute() else base_dir / path


def _media(raw: Any, base_dir: Path) -> str:
    media = str(raw or "").strip()
    if not media or media.startswith(("http://", "https://")):
        return media
    return str(_path(media, base_dir))


def _hardware(values: Mapping[str, Any]) -> HardwareSpec:
    arch_raw = str(values.get("arch", "x86_64")).strip().lower()
    arch = ARCH_ALIASES.get(arch_raw, arch_raw)
    if arch not in SUPPORTED_ARCHES:
        raise ConfigurationError(f"Unsupported arch '{arch_raw}'. Supported: {', '.join(sorted(SUPPORTED_ARCHES))}")
    firmware = str(values.get("firmware", "uefi" if arch == "aarch64" else "bios")).strip().lower()
    if firmware not in SUPPORTED_FIRMWARE:
        raise ConfigurationError(f"Unsupported firmware '{firmware}'. Supported: bios, uefi")
    if arch == "aarch64" and firmware != "uefi":
        raise ConfigurationError("aarch64 guests require uefi firmware")
    disk_format = str(values.get("disk_format", "qcow2")).strip().lower()
    if disk_format not in SUPPORTED_DISK_FORMATS:
        raise ConfigurationError(
            f"Unsupported disk_format '{disk_format}'. Supported: {', '.join(sorted(SUPPORTED_DISK_FORMATS))}"
        )
    return HardwareSpec(
        memory_mb=_int(values.get("memory", 2048), "memory", minimum=128),
        cpus=_int(values.get("cpus", 2), "cpus", minimum=1),
        disk_size=validate_disk_size(str(values.get("disk_size", "20G"))),
        arch=arch,
        firmware=firmware,
        network=str(values.get("network", "default")),
        disk_format=disk_format,
    )


def _credentials(values: Mapping[str, Any], base_dir: Path) -> ConnectionCredentials:
    username = values.get("ssh_username")
    if not username:
        raise ConfigurationError("ssh_username is required")
    password = values.get("ssh_password")
    key_file = _path(values.get("ssh_private_key_file"), base_dir)
    if not password and key_file is None:
        raise ConfigurationError("Either ssh_password or ssh_private_key_file is required")
    return ConnectionCredentials(
        username=str(username),
        password=str(password) if password else None,
        private_key_file=key_file,
        port=_int(values.get("ssh_port", 22), "ssh_port", minimum=1),
    )


def _provisioner(raw: Optional[Mapping[str, Any]], base_dir: Path) -> Optional[ProvisionerSpec]:
    if not raw:
        return None
    executable = raw.get("executable")
    if not executable:
        raise ConfigurationError("provisioner.executable is required")
    arguments = raw.get("arguments") or []
    if not isinstance(arguments, list):
        raise ConfigurationError("provisioner.arguments must be a list")
    env = _mapping(raw.get("env"), "provisioner.env")
    timeout = raw.get("timeout")
    return ProvisionerSpec(
        executable=str(executable),
        arguments=[str(a) for a in arguments],
        working_dir=_path(raw.get("working_dir"), base_dir),
        env={str(k): str(v) for k, v in env.items()},
        timeout=parse_duration(timeout, "provisioner.timeout") if timeout not in (None, "") else None,
    )


def build_configs(
    template: Template,
    variables: Mapping[str, Any],
    only: Optional[Sequence[str]] = None,
) -> List[BuildConfig]:
    """Expand every build variant of 'template' into a validated BuildConfig."""
    base_dir = template.base_dir
    post = interpolate(template.post, variables, "post")
    output_dir = _path(post.get("output_dir"), base_dir) or base_dir / DEFAULT_OUTPUT_DIR
    manifest_path = _path(post.get("manifest"), base_dir) or output_dir / DEFAULT_MANIFEST_NAME
    sensitive_values = tuple(
        str(variables[name]) for name in template.sensitive if variables.get(name) not in (None, "")
    )

    configs: List[BuildConfig] = []
    seen = set()
    artifact_ids: Dict[str, str] = {}
    for index, variant in enumerate(template.builds):
        merged = dict(template.source)
        merged.update({k: v for k, v in variant.items() if k != "provisioner"})
        where = f"builds[{index}]"

        name = str(interpolate(merged.get("name"), variables, f"{where}.name") or "")
        if not BUILD_NAME_RE.match(name):
            raise ConfigurationError(f"{where}: build name '{name}' must match {BUILD_NAME_RE.pattern}")
        if name in seen:
            raise ConfigurationError(f"Duplicate build name '{name}'")
        seen.add(name)
        if only and name not in only:
            continue
        values = interpolate(merged, variables, where)

        artifact_id = str(values.get("artifact_id") or name)
        if not BUILD_NAME_RE.match(artifact_id):
            raise ConfigurationError(f"{name}: artifact_id '{artifact_id}' must match {BUILD_NAME_RE.pattern}")
        if artifact_id in artifact_ids:
            raise ConfigurationError(
                f"{name}: artifact_id '{artifact_id}' is already produced by build '{artifact_ids[artifact_id]}'"
            )
        artifact_ids[artifact_id] = name
        media_checksum = values.get("media_checksum")
        parse_checksum(media_checksum)
        http_dir = _path(values.get("http_directory"), base_dir)
        if http_dir is None:
            raise ConfigurationError(f"{name}: http_directory is required")
        bootstrap_document = values.get("bootstrap_document")
        if not bootstrap_document:
            raise ConfigurationError(f"{name}: bootstrap_document is required")
        metadata = _mapping(values.get("metadata"), f"{where}.metadata")
        reinject_after = values.get("boot_reinject_after")

        provisioner_raw = variant.get("provisioner", template.provisioner)
        provisioner = _provisioner(interpolate(provisioner_raw, variables, "provisioner"), base_dir)

        try:
            boot_command = parse_boot_command(values.get("boot_command") or [])
        except ConfigurationError as exc:
            raise ConfigurationError(f"{name}: boot_command: {exc}") from exc

        config = BuildConfig(
            name=name,
            artifact_id=artifact_id,
            media=_media(values.get("media"), base_dir),
            media_checksum=str(media_checksum) if media_checksum else None,
            http_dir=http_dir,
            bootstrap_document=str(bootstrap_document),
            credentials=_credentials(values, base_dir),
            hardware=_hardware(values),
            boot_command=boot_command,
            boot_wait=parse_duration(values.get("boot_wait", DEFAULT_BOOT_WAIT), "boot_wait"),
            boot_key_interval=parse_duration(
                values.get("boot_key_interval", DEFAULT_BOOT_KEY_INTERVAL), "boot_key_interval"
            ),
            boot_reinject_attempts=_int(values.get("boot_reinject_attempts", 0), "boot_reinject_attempts"),
            boot_reinject_after=(
                parse_duration(reinject_after, "boot_reinject_after") if reinject_after not in (None, "") else None
            ),
            http_bind_host=str(values.get("http_bind_address") or "0.0.0.0"),
            http_advertise_host=values.get("http_advertise_address") or None,
            ssh_timeout=parse_duration(values.get("ssh_timeout", DEFAULT_SSH_TIMEOUT), "ssh_timeout"),
            ssh_poll_interval=parse_duration(
                values.get("ssh_poll_interval", DEFAULT_SSH_POLL_INTERVAL), "ssh_poll_interval"
            ),
            shutdown_command=values.get("shutdown_command") or None,
            shutdown_timeout=parse_duration(
                values.get("shutdown_timeout", DEFAULT_SHUTDOWN_TIMEOUT), "shutdown_timeout"
            ),
            provisioner=provisioner,
            output_dir=output_dir,
            manifest_path=manifest_path,
            metadata=metadata,
            sensitive=sensitive_values,
        )
        if config.ssh_poll_interval <= 0:
            raise ConfigurationError(f"{name}: ssh_poll_interval must be greater than zero")
        configs.append(config)

    if only:
        missing = sorted(set(only) - seen)
        if missing:
            raise ConfigurationError(f"--only: no build named {', '.join(missing)}")
    return configs


def load_builds(
    template_path: Path,
    var_files: Sequence[Path] = (),
    overrides: Sequence[str] = (),
    only: Optional[Sequence[str]] = None,
) -> Tuple[Template, Dict[str, Any], List[BuildConfig]]:
    template = load_template(template_path)
    variables = resolve_variables(template, load_var_files(var_files), parse_var_overrides(overrides))
    return template, variables, build_configs(template, variables, only)


def masked_view(config: BuildConfig) -> Dict[str, Any]:
    """Plain-data rendering of a BuildConfig for display, with every secret replaced."""
    data = dataclasses.asdict(config)
    del data["sensitive"]
    credentials = data["credentials"]
    for field_name in _SENSITIVE_FIELDS:
        if credentials.get(field_name):
            credentials[field_name] = MASK
    data["boot_command"] = [
        {"keys": step["keys"], "wait": step["wait"]} for step in data["boot_command"]["steps"]
    ]
    data = _plain(data)
    return mask_values(data, config.credentials.secrets + tuple(config.sensitive))


def masked_variables(template: Template, variables: Mapping[str, Any]) -> Dict[str, Any]:
    return {name: (MASK if name in template.sensitive and value not in (None, "") else value)
            for name, value in variables.items()}


def _plain(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    return value
