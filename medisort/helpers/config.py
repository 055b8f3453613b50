from os import environ
from pathlib import Path

import yaml
from dotenv import find_dotenv
from pydantic import ValidationError

from medisort.helpers.config_models.root import RootModel

_CONFIG_ENV = "CONFIG_JSON"
_CONFIG_FILE = "config.yaml"
_CONFIG_PATH_ENV = "CONFIG_PATH"


def _find_file() -> Path | None:
    """
    Locate the YAML file.

    An explicit `CONFIG_PATH` must exist, otherwise `config.yaml` is searched from the working directory upwards.
    """
    explicit = environ.get(_CONFIG_PATH_ENV)
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise ValueError(f'Config file "{path}" from env "{_CONFIG_PATH_ENV}" does not exist')
        return path

    found = find_dotenv(filename=_CONFIG_FILE, usecwd=True)
    return Path(found) if found else None


def load_config() -> RootModel:
    """
    Load the configuration.

    Sources, first match wins:
    1. JSON document in env `CONFIG_JSON`
    2. YAML file, see `_find_file`
    3. Defaults, every section has one
    """
    if _CONFIG_ENV in environ:
        config = RootModel.model_validate_json(environ[_CONFIG_ENV])
        print(f'Config loaded from env "{_CONFIG_ENV}"')  # noqa: T201
        return config

    path = _find_file()
    if not path:
        print(f'Cannot find "{_CONFIG_FILE}", using defaults')  # noqa: T201
        return RootModel()

    with path.open(encoding="utf-8") as f:
        config = RootModel.model_validate(yaml.safe_load(f) or {})
    print(f'Config loaded from file "{path}"')  # noqa: T201
    return config


def _format_errors(e: ValidationError) -> str:
    lines = ["Config values are not valid:"]
    for i, error in enumerate(e.errors(), start=1):
        loc = ".".join(str(part) for part in error["loc"])
        lines.append(f"{i}. At {loc}: {error['msg']} (input value: {error['input']})")
    return "\n".join(lines)


try:
    CONFIG = load_config()
except ValidationError as e:
    raise ValueError(_format_errors(e)) from e
