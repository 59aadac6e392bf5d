import base64
import json

import pytest

from urunc.config import (
    ANNOT_BINARY,
    ANNOT_BLOCK,
    ANNOT_BLOCK_MNT_POINT,
    ANNOT_CMDLINE,
    ANNOT_HYPERVISOR,
    ANNOT_INITRD,
    ANNOT_TYPE,
    ANNOT_USE_DM_BLOCK,
    URUNC_JSON_FILENAME,
    EmptyAnnotationsError,
    UnikernelConfig,
    config_from_json,
    config_from_spec,
    get_unikernel_config,
)

ROOTFS_DIR_NAME = "rootfs"


def _b64(text):
    return base64.b64encode(text.encode()).decode()


def _full_config():
    return UnikernelConfig(
        unikernel_binary="binary1",
        unikernel_type="type1",
        unikernel_cmd="cmd1",
        hypervisor="hypervisor1",
        initrd="initrd1",
        block="block1",
        blk_mnt_point="point1",
        use_dm_block="true",
    )


def test_config_from_spec_success():
    spec = {
        "annotations": {
            ANNOT_TYPE: "type1",
            ANNOT_CMDLINE: "cmd1",
            ANNOT_BINARY: "binary1",
            ANNOT_HYPERVISOR: "hypervisor1",
            ANNOT_INITRD: "initrd1",
            ANNOT_BLOCK: "block1",
            ANNOT_BLOCK_MNT_POINT: "point1",
            ANNOT_USE_DM_BLOCK: "true",
        }
    }
    assert config_from_spec(spec) == _full_config()


def test_config_from_spec_empty_annotations():
    with pytest.raises(EmptyAnnotationsError, match="spec annotations are empty"):
        config_from_spec({"annotations": {}})


def test_config_from_spec_only_dm_block_is_empty():
    with pytest.raises(EmptyAnnotationsError):
        config_from_spec({"annotations": {ANNOT_USE_DM_BLOCK: "true"}})


def test_config_from_spec_partial_annotations():
    spec = {"annotations": {ANNOT_TYPE: "type1"}}
    assert config_from_spec(spec) == UnikernelConfig(unikernel_type="type1")


def test_config_from_json_success(tmp_path):
    expected = _full_config()
    rootfs = tmp_path / ROOTFS_DIR_NAME
    rootfs.mkdir()
    config_path = rootfs / URUNC_JSON_FILENAME
    config_path.write_text(json.dumps(expected.to_json()))
    assert config_from_json(config_path) == expected


def test_config_from_json_file_not_found(tmp_path):
    with pytest.raises(FileNotFoundError):
        config_from_json(tmp_path / URUNC_JSON_FILENAME)


def test_config_from_json_is_directory(tmp_path):
    config_dir = tmp_path / ROOTFS_DIR_NAME / URUNC_JSON_FILENAME
    config_dir.mkdir(parents=True)
    with pytest.raises(IsADirectoryError, match=f"{URUNC_JSON_FILENAME} is a directory"):
        config_from_json(config_dir)


def test_config_from_invalid_json(tmp_path):
    rootfs = tmp_path / ROOTFS_DIR_NAME
    rootfs.mkdir()
    config_path = rootfs / URUNC_JSON_FILENAME
    config_path.write_text("invalid json")
    with pytest.raises(json.JSONDecodeError):
        config_from_json(config_path)


def test_from_json_rejects_non_string_field():
    with pytest.raises(ValueError):
        UnikernelConfig.from_json({ANNOT_TYPE: 5})


def test_from_json_rejects_non_object():
    with pytest.raises(ValueError):
        UnikernelConfig.from_json(["a"])


def test_to_json_omits_optional_empty_fields():
    data = UnikernelConfig(unikernel_type="type1").to_json()
    assert ANNOT_CMDLINE not in data
    assert ANNOT_INITRD not in data
    assert ANNOT_BLOCK not in data
    assert ANNOT_BLOCK_MNT_POINT not in data
    assert data[ANNOT_TYPE] == "type1"
    assert data[ANNOT_USE_DM_BLOCK] == ""
    assert UnikernelConfig.from_json(data) == UnikernelConfig(unikernel_type="type1")


def test_decode_success():
    config = UnikernelConfig(
        unikernel_cmd=_b64("testCmd"),
        hypervisor=_b64("testHypervisor"),
        unikernel_type=_b64("testType"),
        unikernel_binary=_b64("testBinary"),
        initrd=_b64("testInitrd"),
    )
    config.decode()
    assert config.unikernel_cmd == "testCmd"
    assert config.hypervisor == "testHypervisor"
    assert config.unikernel_type == "testType"
    assert config.unikernel_binary == "testBinary"
    assert config.initrd == "testInitrd"


def test_decode_invalid_base64():
    invalid = "invalid-base64"
    config = UnikernelConfig(
        unikernel_cmd=invalid,
        hypervisor=invalid,
        unikernel_type=invalid,
        unikernel_binary=invalid,
        initrd=invalid,
    )
    with pytest.raises(ValueError, match="failed to decode UnikernelCmd"):
        config.decode()


def test_map_success():
    config = UnikernelConfig(
        unikernel_binary="binary_value",
        unikernel_type="type_value",
        unikernel_cmd="cmd_value",
        hypervisor="hypervisor_value",
        initrd="initrd_value",
        block="block_value",
        blk_mnt_point="point_value",
        use_dm_block="false",
    )
    assert config.to_map() == {
        ANNOT_CMDLINE: "cmd_value",
        ANNOT_TYPE: "type_value",
        ANNOT_HYPERVISOR: "hypervisor_value",
        ANNOT_BINARY: "binary_value",
        ANNOT_INITRD: "initrd_value",
        ANNOT_BLOCK: "block_value",
        ANNOT_BLOCK_MNT_POINT: "point_value",
        ANNOT_USE_DM_BLOCK: "false",
    }


def test_map_empty_fields(monkeypatch):
    monkeypatch.delenv("USE_DEVMAPPER_AS_BLOCK", raising=False)
    config = UnikernelConfig(
        unikernel_binary="",
        unikernel_type="",
        unikernel_cmd="",
        hypervisor="",
        initrd="",
        block="",
        blk_mnt_point="",
        use_dm_block="",
    )
    assert config.to_map() == {ANNOT_USE_DM_BLOCK: ""}


def test_map_partial_fields():
    config = UnikernelConfig(
        unikernel_binary="binary_value",
        unikernel_cmd="cmd_value",
        initrd="initrd_value",
        blk_mnt_point="point_value",
        use_dm_block="0",
    )
    assert config.to_map() == {
        ANNOT_CMDLINE: "cmd_value",
        ANNOT_BINARY: "binary_value",
        ANNOT_INITRD: "initrd_value",
        ANNOT_BLOCK_MNT_POINT: "point_value",
        ANNOT_USE_DM_BLOCK: "0",
    }


def test_map_no_fields(monkeypatch):
    monkeypatch.delenv("USE_DEVMAPPER_AS_BLOCK", raising=False)
    assert UnikernelConfig().to_map() == {ANNOT_USE_DM_BLOCK: ""}


def test_map_dm_block_from_environment(monkeypatch):
    monkeypatch.setenv("USE_DEVMAPPER_AS_BLOCK", "true")
    assert UnikernelConfig().to_map() == {ANNOT_USE_DM_BLOCK: "true"}


def test_get_unikernel_config_from_annotations(tmp_path):
    spec = {
        "root": {"path": ROOTFS_DIR_NAME},
        "annotations": {
            ANNOT_TYPE: _b64("unikraft"),
            ANNOT_HYPERVISOR: _b64("qemu"),
            ANNOT_BINARY: _b64("/unikernel/app"),
        },
    }
    config = get_unikernel_config(tmp_path, spec)
    assert config.unikernel_type == "unikraft"
    assert config.hypervisor == "qemu"
    assert config.unikernel_binary == "/unikernel/app"
    assert config.unikernel_cmd == ""


def test_get_unikernel_config_falls_back_to_relative_json(tmp_path):
    rootfs = tmp_path / ROOTFS_DIR_NAME
    rootfs.mkdir()
    stored = UnikernelConfig(unikernel_type=_b64("rumprun"), hypervisor=_b64("hvt"))
    (rootfs / URUNC_JSON_FILENAME).write_text(json.dumps(stored.to_json()))
    spec = {"root": {"path": ROOTFS_DIR_NAME}, "annotations": {}}
    config = get_unikernel_config(tmp_path, spec)
    assert config.unikernel_type == "rumprun"
    assert config.hypervisor == "hvt"


def test_get_unikernel_config_falls_back_to_absolute_json(tmp_path):
    rootfs = tmp_path / "elsewhere"
    rootfs.mkdir()
    stored = UnikernelConfig(unikernel_binary=_b64("kernel"))
    (rootfs / URUNC_JSON_FILENAME).write_text(json.dumps(stored.to_json()))
    spec = {"root": {"path": str(rootfs)}}
    config = get_unikernel_config(tmp_path / "bundle", spec)
    assert config.unikernel_binary == "kernel"


def test_get_unikernel_config_missing_everywhere(tmp_path):
    spec = {"root": {"path": ROOTFS_DIR_NAME}, "annotations": {}}
    with pytest.raises(ValueError, match="failed to retrieve Unikernel config"):
        get_unikernel_config(tmp_path, spec)


def test_get_unikernel_config_bad_annotation_encoding(tmp_path):
    spec = {"annotations": {ANNOT_TYPE: "not*base64"}}
    with pytest.raises(ValueError, match="failed to decode UnikernelType"):
        get_unikernel_config(tmp_path, spec)