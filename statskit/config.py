"""Configuration for statskit"""

import os

from dynaconf import Dynaconf, Validator

_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

# Validators for statskit settings.
_validators = [
    Validator("logging.format", is_in=["mozlog", "pretty"]),
    Validator("logging.level", is_in=_LOG_LEVELS),
    Validator("logging.can_propagate", is_type_of=bool),
    Validator("metrics.prefix", is_type_of=str),
    Validator("metrics.default_sample_rate", gte=0, lte=1),
    # An empty address keeps metrics in memory, nothing is sent.
    Validator("metrics.address", is_type_of=str),
    Validator("metrics.log_level", is_in=_LOG_LEVELS),
    Validator("metrics.labels", is_type_of=dict),
    Validator("metrics.flush_interval_sec", gt=0),
    Validator("metrics.dev_logger", is_type_of=bool),
    # Logging datagrams instead of sending them is for local development only.
    Validator("metrics.dev_logger", eq=False, env="production"),
]

# `root_path` = The root path for Dynaconf, the directory of this package.
# `envvar_prefix` = Export envvars with `export STATSKIT_FOO=bar`.
# `settings_files` = Load these files in the order.
# `environments` = Enable layered environments such as `development`, `production`, `testing` etc.
# `merge_enabled` = Merge nested tables of an environment into the default ones.
# `env_switcher` = Switch environments by `export STATSKIT_ENV=production`. Default: `development`.
# `validators` = Define validators for statskit settings.

settings = Dynaconf(
    root_path=os.path.dirname(os.path.abspath(__file__)),
    envvar_prefix="STATSKIT",
    settings_files=[
        "configs/default.toml",
        "configs/development.toml",
        "configs/production.toml",
        "configs/testing.toml",
    ],
    environments=True,
    merge_enabled=True,
    env_switcher="STATSKIT_ENV",
    validators=_validators,
)
