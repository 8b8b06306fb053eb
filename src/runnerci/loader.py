# loader.py
from __future__ import annotations

import re
import runpy
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .errors import ConfigError, DuplicateJobError
from .model import JobSpec, PipelineDefinition

# top-level keys that are not jobs
RESERVED_KEYS = frozenset({
    "stages", "variables", "image", "before_script", "after_script", "services",
    "cache", "default", "include", "workflow", "pages_defaults",
})

_DURATION_PART = re.compile(
    r"(\d+(?:\.\d+)?)\s*(h|hrs?|hours?|m|mins?|minutes?|s|secs?|seconds?)\b",
    re.IGNORECASE,
)
_UNIT_SECONDS = {"h": 3600, "m": 60, "s": 1}


def parse_timeout(value: Union[int, float, str, None]) -> Optional[float]:
    """
    Accept seconds (int/float/"90") or GitLab style durations ("1h 30m",
    "10 minutes", "45s").
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid timeout: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            leftover = _DURATION_PART.sub("", text).strip()
            if not parts or leftover:
                raise ValueError(f"invalid timeout: {value!r}")
            seconds = sum(float(n) * _UNIT_SECONDS[unit[0].lower()] for n, unit in parts)
    if seconds <= 0:
        raise ValueError(f"timeout must be positive: {value!r}")
    return seconds


def _flatten(value: Any) -> List[str]:
    # YAML anchors can nest script lists; GitLab flattens them
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    out: List[str] = []
    for item in value:
        if isinstance(item, (list, tuple)):
            out.extend(_flatten(item))
        else:
            out.append(str(item))
    return out


# ----------------------------------------------------------------------
# Schemas
# ----------------------------------------------------------------------

class AllowFailureConfig(BaseModel):
    """`allow_failure: {exit_codes: [...]}`: only failures with these exit codes are tolerated."""
    model_config = ConfigDict(extra="forbid")

    exit_codes: List[int]

    @field_validator("exit_codes", mode="before")
    @classmethod
    def _codes_list(cls, v):
        if isinstance(v, int):
            return [v]
        return v


class JobConfig(BaseModel):
    """One job as written in the definition file. Unknown keywords are ignored."""
    model_config = ConfigDict(extra="ignore")

    image: Optional[Union[str, Dict[str, Any]]] = None
    before_script: Optional[List[str]] = None
    script: List[str] = []
    tags: Optional[List[str]] = None
    needs: Optional[List[Union[str, Dict[str, Any]]]] = None
    stage: Optional[str] = None
    allow_failure: Union[bool, AllowFailureConfig] = False
    timeout: Optional[Union[int, float, str]] = None
    variables: Dict[str, Union[str, int, float, bool]] = {}

    @field_validator("before_script", "script", "tags", mode="before")
    @classmethod
    def _listify(cls, v):
        if v is None:
            return None
        return _flatten(v)

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_list(cls, v):
        if v is None:
            return None
        if isinstance(v, (str, dict)):
            return [v]
        return v

    @field_validator("timeout")
    @classmethod
    def _check_timeout(cls, v):
        parse_timeout(v)
        return v

    def need_names(self) -> Optional[List[str]]:
        if self.needs is None:
            return None
        names = []
        for n in self.needs:
            if isinstance(n, dict):
                if "job" not in n:
                    raise ValueError(f"needs entry without 'job': {n}")
                names.append(str(n["job"]))
            else:
                names.append(n)
        return names


class DefaultsConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    image: Optional[Union[str, Dict[str, Any]]] = None
    before_script: Optional[List[str]] = None
    tags: Optional[List[str]] = None

    @field_validator("before_script", "tags", mode="before")
    @classmethod
    def _listify(cls, v):
        if v is None:
            return None
        return _flatten(v)


def _image_name(image: Union[str, Dict[str, Any], None]) -> Optional[str]:
    if isinstance(image, dict):
        return image.get("name")
    return image


def _validation_message(err: ValidationError) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e["loc"])
        parts.append(f"{loc}: {e['msg']}" if loc else e["msg"])
    return "; ".join(parts)


# ----------------------------------------------------------------------
# Mapping -> PipelineDefinition
# ----------------------------------------------------------------------

def definition_from_mapping(data: Mapping[str, Any]) -> PipelineDefinition:
    """
    Turn a parsed GitLab-CI style mapping into a validated PipelineDefinition.

    Top-level `image`, `before_script`, `variables` and a `default:` block
    supply defaults. Keys starting with "." are templates, not jobs.
    """
    if not isinstance(data, Mapping):
        raise ConfigError(f"Pipeline definition must be a mapping, got {type(data).__name__}")

    try:
        defaults = DefaultsConfig.model_validate(dict(data.get("default") or {}))
        legacy = DefaultsConfig.model_validate({k: data[k] for k in ("image", "before_script") if k in data})
    except ValidationError as e:
        raise ConfigError(f"Invalid defaults: {_validation_message(e)}") from e

    default_image = _image_name(defaults.image) or _image_name(legacy.image)
    default_before = defaults.before_script if defaults.before_script is not None else legacy.before_script
    default_tags = defaults.tags

    stages = data.get("stages") or []
    if not isinstance(stages, list) or not all(isinstance(s, str) for s in stages):
        raise ConfigError("'stages' must be a list of stage names")

    global_vars = data.get("variables") or {}
    if not isinstance(global_vars, Mapping):
        raise ConfigError("'variables' must be a mapping")

    jobs: List[JobSpec] = []
    for name, body in data.items():
        name = str(name)
        if name in RESERVED_KEYS or name.startswith("."):
            continue
        if not isinstance(body, Mapping):
            raise ConfigError(f"Job '{name}' must be a mapping", job=name)

        try:
            cfg = JobConfig.model_validate(dict(body))
            needs = cfg.need_names()
            timeout = parse_timeout(cfg.timeout)
        except ValidationError as e:
            raise ConfigError(f"Invalid job '{name}': {_validation_message(e)}", job=name) from e
        except ValueError as e:
            raise ConfigError(f"Invalid job '{name}': {e}", job=name) from e

        image = _image_name(cfg.image) or default_image
        if not image:
            raise ConfigError(f"Job '{name}' has no image and no default image is set", job=name)

        if isinstance(cfg.allow_failure, AllowFailureConfig):
            allow_failure, allow_exit_codes = False, cfg.allow_failure.exit_codes
        else:
            allow_failure, allow_exit_codes = cfg.allow_failure, []

        variables = {str(k): str(v) for k, v in global_vars.items()}
        variables.update({k: str(v) for k, v in cfg.variables.items()})

        jobs.append(
            JobSpec(
                name=name,
                image=image,
                before_script=cfg.before_script if cfg.before_script is not None else (default_before or []),
                script=cfg.script,
                tags=cfg.tags if cfg.tags is not None else (default_tags or []),
                needs=needs,
                stage=cfg.stage,
                allow_failure=allow_failure,
                allow_exit_codes=allow_exit_codes,
                timeout=timeout,
                variables=variables,
            )
        )

    return PipelineDefinition.from_jobs(jobs, stages=stages)


# ----------------------------------------------------------------------
# YAML
# ----------------------------------------------------------------------

class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate keys instead of silently keeping the last."""


def _construct_unique_mapping(loader: _UniqueKeyLoader, node: yaml.MappingNode, deep: bool = False):
    seen = set()
    for key_node, _value in node.value:
        if key_node.tag == "tag:yaml.org,2002:merge":
            continue
        key = loader.construct_object(key_node, deep=deep)
        if key in seen:
            if key_node.start_mark.column == 0:
                raise DuplicateJobError(job=str(key), names=[str(key)])
            raise ConfigError(f"Duplicate key '{key}' at line {key_node.start_mark.line + 1}")
        seen.add(key)
    return loader.construct_mapping(node, deep=deep)


_UniqueKeyLoader.add_constructor(yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_unique_mapping)


def _load_yaml_mapping(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = yaml.load(handle, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ConfigError(f"Pipeline file must contain a YAML mapping: {path}")
    return dict(payload)


def definition_from_yaml(text: str) -> PipelineDefinition:
    """Parse definition text directly (used by tests and embedding callers)."""
    try:
        payload = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML: {exc}") from exc
    return definition_from_mapping(payload or {})


# ----------------------------------------------------------------------
# Python workflow files
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> PipelineDefinition:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> List[JobSpec]
      - JOBS = [JobSpec, ...]
    and may define STAGES = ["build", "test", ...].
    """
    wf_path = Path(path).expanduser().resolve()
    module_name = f"runnerci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if isinstance(jobs, PipelineDefinition):
        return jobs
    if not isinstance(jobs, list) or not all(isinstance(j, JobSpec) for j in jobs):
        raise ConfigError(
            "Workflow must return/define a List[JobSpec]. "
            "Define workflow() -> List[JobSpec] or JOBS = [JobSpec, ...]."
        )

    return PipelineDefinition.from_jobs(jobs, stages=globals_dict.get("STAGES") or ())


def load_definition(path: str | Path) -> PipelineDefinition:
    """Load a pipeline definition from a .yml/.yaml or .py file."""
    p = Path(path).expanduser()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline definition not found: {p}")

    if p.suffix in (".yml", ".yaml"):
        return definition_from_mapping(_load_yaml_mapping(p))
    if p.suffix == ".py":
        return load_workflow(p)
    raise ConfigError(f"Unsupported definition file type '{p.suffix}' (expected .yml, .yaml or .py)")
