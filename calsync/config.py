import json
import logging
import os
from dataclasses import dataclass
from dataclasses import field
from dataclasses import fields
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

"""
Configuration for the calendar driver.

Configuration files are json (or yaml, if pyyaml is installed) with
named sections.  A section may "inherit" the options of another section.
The options of the resolved section are fed into SyncConfig.from_dict.
"""

log = logging.getLogger("calsync")


@dataclass
class SyncConfig:
    """
    All knobs of the driver, passed explicitly at construction time.

    Attributes:
        sync_period: Minimum number of seconds between two remote checks
            of the same calendar
        max_occurrences: Upper bound of materialized occurrences per series
        horizon_years: Series without COUNT and UNTIL are not expanded
            further than this many years from now
        timezone: The server timezone.  Recurrences are expanded in it,
            and instance keys are formatted in it
        user_emails: Addresses of the current user, used to decide if the
            user is the organizer of an event
        preinstalled_sources: CalDAV sources to add for every user.  "%u"
            in url/user is replaced with the user name, "%p" in pass with
            the password
        alarm_types: Alarm actions that produce a notification time
        debug: Log the sync passes and pushes of this driver at warning
            level, so they show without touching the calsync logger
        timeout: Timeout (seconds) for every request to a CalDAV server
        ssl_verify_cert: Verify server certificates
    """

    sync_period: int = 10
    max_occurrences: int = 999
    horizon_years: int = 20
    timezone: str = "UTC"
    user_emails: Tuple[str, ...] = ()
    preinstalled_sources: List[Dict[str, Any]] = field(default_factory=list)
    alarm_types: Tuple[str, ...] = ("DISPLAY",)
    debug: bool = False
    timeout: Optional[float] = 30.0
    ssl_verify_cert: bool = True

    @classmethod
    def from_dict(cls, options: Dict[str, Any]) -> "SyncConfig":
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in options.items():
            key = key.replace("-", "_")
            if key not in known:
                log.debug(f"ignoring unknown config option {key}")
                continue
            if key in ("user_emails", "alarm_types"):
                value = tuple(x.lower() if key == "user_emails" else x for x in value)
            kwargs[key] = value
        return cls(**kwargs)


def config_section(config, section="default"):
    if section in config and "inherits" in config[section]:
        ret = config_section(config, config[section]["inherits"])
    else:
        ret = {}
    if section in config:
        ret.update(config[section])
    ret.pop("inherits", None)
    return ret


def read_config(fn, interactive_error=False):
    if not fn:
        cfgdir = f"{os.environ.get('HOME', '/')}/.config/"
        for config_file in (
            f"{cfgdir}/calsync/calsync.conf",
            f"{cfgdir}/calsync/calsync.yaml",
            f"{cfgdir}/calsync/calsync.json",
            "/etc/calsync/calsync.conf",
        ):
            cfg = read_config(config_file)
            if cfg:
                return cfg
        return None

    try:
        try:
            with open(fn, "rb") as config_file:
                return json.load(config_file)
        except json.decoder.JSONDecodeError:
            ## Late import.  yaml is an external module, and not in the
            ## requirements as for now.
            try:
                import yaml

                try:
                    with open(fn, "rb") as config_file:
                        return yaml.load(config_file, yaml.SafeLoader)
                except yaml.YAMLError:
                    log.error(
                        f"config file {fn} exists but is neither valid json nor yaml.  Check the syntax."
                    )
            except ImportError:
                log.error(
                    f"config file {fn} exists but is not valid json, and pyyaml is not installed."
                )

    except FileNotFoundError:
        log.info("no config file found")
    except ValueError:
        if interactive_error:
            log.error(
                "error in config file.  Be aware that the interactive configuration will ignore and overwrite the current broken config file",
                exc_info=True,
            )
        else:
            log.error("error in config file.  It will be ignored", exc_info=True)
    return {}


def load_sync_config(fn=None, section="default") -> SyncConfig:
    """Read a config file and build the SyncConfig of one section"""
    config = read_config(fn) or {}
    if section not in config:
        return SyncConfig()
    return SyncConfig.from_dict(config_section(config, section))
