"""Unikernel configuration taken from bundle annotations or urunc.json."""

from __future__ import annotations

import base64
import binascii
import dataclasses
import json
import logging
import os
from typing import Any, Mapping

log = logging.getLogger(__name__)

URUNC_JSON_FILENAME = "urunc.json"
USE_DEVMAPPER_ENV = "USE_DEVMAPPER_AS_BLOCK"

ANNOT_TYPE = "com.urunc.unikernel.unikernelType"
ANNOT_VERSION = "com.urunc.unikernel.unikernelVersion"
ANNOT_BINARY = "com.urunc.unikernel.binary"
ANNOT_CMDLINE = "com.urunc.unikernel.cmdline"
ANNOT_HYPERVISOR = "com.urunc.unikernel.hypervisor"
ANNOT_INITRD = "com.urunc.unikernel.initrd"
ANNOT_BLOCK = "com.urunc.unikernel.block"
ANNOT_BLOCK_MNT_POINT = "com.urunc.unikernel.blkMntPoint"
ANNOT_USE_DM_BLOCK = "com.urunc.unikernel.useDMBlock"


class EmptyAnnotationsError(ValueError):
    """The spec carries none of the unikernel annotations."""

    def __init__(self, message: str = "spec annotations are empty") -> None:
        super().__init__(message)


@dataclasses.dataclass(frozen=True)
class _Field:
    attr: str
    key: str
    label: str
    omit_empty: bool


# Order of JSON serialisation.
_FIELDS = (
    _Field("unikernel_type", ANNOT_TYPE, "UnikernelType", False),
    _Field("unikernel_version", ANNOT_VERSION, "UnikernelVersion", False),
    _Field("unikernel_cmd", ANNOT_CMDLINE, "UnikernelCmd", True),
    _Field("unikernel_binary", ANNOT_BINARY, "UnikernelBinary", False),
    _Field("hypervisor", ANNOT_HYPERVISOR, "Hypervisor", False),
    _Field("initrd", ANNOT_INITRD, "Initrd", True),
    _Field("block", ANNOT_BLOCK, "Block", True),
    _Field("blk_mnt_point", ANNOT_BLOCK_MNT_POINT, "BlockMntPoint", True),
    _Field("use_dm_block", ANNOT_USE_DM_BLOCK, "UseDMBlock", False),
)
_BY_ATTR = {f.attr: f for f in _FIELDS}

_DECODE_ORDER = (
    "unikernel_cmd",
    "hypervisor",
    "unikernel_type",
    "unikernel_version",
    "unikernel_binary",
    "initrd",
    "block",
    "blk_mnt_point",
    "use_dm_block",
)

_MAP_ORDER = (
    "unikernel_cmd",
    "unikernel_type",
    "unikernel_version",
    "hypervisor",
    "unikernel_binary",
    "initrd",
    "block",
    "blk_mnt_point",
)


@dataclasses.dataclass
class UnikernelConfig:
    """How to run a unikernel: its type, binary, monitor and storage."""

    unikernel_type: str = ""
    unikernel_version: str = ""
    unikernel_cmd: str = ""
    unikernel_binary: str = ""
    hypervisor: str = ""
    initrd: str = ""
    block: str = ""
    blk_mnt_point: str = ""
    use_dm_block: str = ""

    def decode(self) -> None:
        """Replace every field by its base64-decoded value, in place."""
        for attr in _DECODE_ORDER:
            encoded = getattr(self, attr)
            try:
                raw = base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ValueError(
                    f"failed to decode {_BY_ATTR[attr].label}: {exc}"
                ) from exc
            setattr(self, attr, raw.decode("utf-8", errors="surrogateescape"))

    def to_map(self) -> dict[str, str]:
        """Return the non-empty fields keyed by annotation name.

        The device-mapper flag is always present; when unset it falls back
        to the USE_DEVMAPPER_AS_BLOCK environment variable.
        """
        result = {
            _BY_ATTR[attr].key: getattr(self, attr)
            for attr in _MAP_ORDER
            if getattr(self, attr)
        }
        result[ANNOT_USE_DM_BLOCK] = self.use_dm_block or os.environ.get(
            USE_DEVMAPPER_ENV, ""
        )
        return result

    def to_json(self) -> dict[str, str]:
        """Return the urunc.json representation of this config."""
        return {
            f.key: getattr(self, f.attr)
            for f in _FIELDS
            if not (f.omit_empty and not getattr(self, f.attr))
        }

    @classmethod
    def from_json(cls, data: Any) -> UnikernelConfig:
        """Build a config from a parsed urunc.json object."""
        if not isinstance(data, Mapping):
            raise ValueError(
                f"cannot load {type(data).__name__} into UnikernelConfig"
            )
        values = {}
        for f in _FIELDS:
            value = data.get(f.key)
            if value is None:
                continue
            if not isinstance(value, str):
                raise ValueError(f"field {f.key} must be a string")
            values[f.attr] = value
        return cls(**values)

    def _log(self, message: str) -> None:
        log.info("%s: %s", message, dataclasses.asdict(self))


def config_from_spec(spec: Mapping[str, Any]) -> UnikernelConfig:
    """Read the unikernel annotations of an OCI spec.

    Raises EmptyAnnotationsError when none of them is set.
    """
    annotations = spec.get("annotations") or {}
    conf = UnikernelConfig(
        **{f.attr: annotations.get(f.key, "") for f in _FIELDS}
    )
    conf._log("urunc annotations")
    significant = (getattr(conf, f.attr) for f in _FIELDS if f.attr != "use_dm_block")
    if not "".join(significant):
        raise EmptyAnnotationsError()
    return conf


def config_from_json(json_file_path: str | os.PathLike) -> UnikernelConfig:
    """Read a unikernel config from a urunc.json file."""
    path = os.fspath(json_file_path)
    if os.path.isdir(path):
        raise IsADirectoryError(f"{URUNC_JSON_FILENAME} is a directory")
    with open(path, "rb") as handle:
        data = json.loads(handle.read())
    conf = UnikernelConfig.from_json(data)
    conf._log(f"{URUNC_JSON_FILENAME} annotations")
    return conf


def get_unikernel_config(
    bundle_dir: str | os.PathLike, spec: Mapping[str, Any]
) -> UnikernelConfig:
    """Return the decoded unikernel config of a bundle.

    The spec annotations are tried first, then urunc.json inside the rootfs.
    """
    try:
        conf = config_from_spec(spec)
    except EmptyAnnotationsError:
        pass
    else:
        conf.decode()
        return conf

    root = spec.get("root") or {}
    rootfs_dir = root.get("path", "")
    if os.path.isabs(rootfs_dir):
        json_path = os.path.join(rootfs_dir, URUNC_JSON_FILENAME)
    else:
        json_path = os.path.join(os.fspath(bundle_dir), rootfs_dir, URUNC_JSON_FILENAME)
    try:
        conf = config_from_json(json_path)
    except (OSError, ValueError) as exc:
        raise ValueError("failed to retrieve Unikernel config") from exc
    conf.decode()
    return conf