from __future__ import annotations

import copy

import pytest

from ubuntu_image.errors import ConfigError
from ubuntu_image.layout import MIB, Volume, load_layout_description, parse_size, resolve_volume
from ubuntu_image.lib.storage import partition_table_script

from .conftest import LINUX, pc_layout, write_gadget


def test_parse_size_units() -> None:
    assert parse_size(440) == 440
    assert parse_size("4M") == 4 * MIB
    assert parse_size("1G") == 1024 * MIB
    assert parse_size("512K") == 512 * 1024
    with pytest.raises(ValueError):
        parse_size("four megs")
    with pytest.raises(ValueError):
        parse_size(-1)


def test_resolve_packs_offsets_and_sizes_the_image(tmp_path) -> None:
    write_gadget(tmp_path)
    volume = resolve_volume(pc_layout(), content_root=tmp_path)

    offsets = {s.name: s.offset for s in volume.structures}
    assert offsets == {"mbr": 0, "BIOS Boot": 1 * MIB, "EFI System": 2 * MIB, "writable": 6 * MIB}
    # last structure end + backup GPT
    assert volume.size == 14 * MIB + 34 * 512
    assert [n for n, _ in volume.partitions()] == [1, 2, 3]
    assert volume.partition_number(volume.find_role("system-data")) == 3


def test_overlapping_structures_are_rejected() -> None:
    layout = pc_layout()
    layout["volumes"]["pc"]["structure"][3]["offset"] = "4M"
    with pytest.raises(ConfigError) as exc:
        resolve_volume(layout, content_root=None)
    assert "overlap" in str(exc.value)


def test_all_problems_are_reported_together() -> None:
    layout = pc_layout()
    structures = layout["volumes"]["pc"]["structure"]
    structures[1]["offset"] = 1000  # not sector aligned
    structures[3]["filesystem"] = "btrfs"
    with pytest.raises(ConfigError) as exc:
        resolve_volume(layout, content_root=None)
    msg = str(exc.value)
    assert "not aligned" in msg
    assert "btrfs" in msg


def test_missing_content_is_reported(tmp_path) -> None:
    with pytest.raises(ConfigError) as exc:
        resolve_volume(pc_layout(), content_root=tmp_path)
    assert "pc-boot.img" in str(exc.value)
    assert "grubx64.efi" in str(exc.value)


def test_content_is_not_checked_without_a_root() -> None:
    volume = resolve_volume(pc_layout(), content_root=None)
    assert volume.name == "pc"


def test_raw_image_larger_than_structure(tmp_path) -> None:
    write_gadget(tmp_path)
    (tmp_path / "pc-core.img").write_bytes(b"\x00" * (MIB + 1))
    with pytest.raises(ConfigError) as exc:
        resolve_volume(pc_layout(), content_root=tmp_path)
    assert "exceeds size" in str(exc.value)


def test_bootable_structure_required_for_architecture() -> None:
    layout = {
        "volumes": {
            "data": {
                "schema": "gpt",
                "structure": [{"name": "writable", "role": "system-data", "type": LINUX, "filesystem": "ext4", "size": "8M"}],
            }
        }
    }
    with pytest.raises(ConfigError) as exc:
        resolve_volume(layout, content_root=None)
    assert "no bootable structure" in str(exc.value)


def test_architecture_restricted_boot_structures() -> None:
    layout = pc_layout()
    for s in layout["volumes"]["pc"]["structure"]:
        s["architectures"] = ["amd64"]
    resolve_volume(layout, content_root=None, architecture="amd64")
    with pytest.raises(ConfigError):
        resolve_volume(layout, content_root=None, architecture="arm64")


def test_image_size_override() -> None:
    volume = resolve_volume(pc_layout(), content_root=None, image_size=64 * MIB)
    assert volume.size == 64 * MIB
    with pytest.raises(ConfigError) as exc:
        resolve_volume(pc_layout(), content_root=None, image_size=8 * MIB)
    assert "smaller than the layout needs" in str(exc.value)


def test_volume_selection() -> None:
    layout = pc_layout()
    layout["volumes"]["other"] = copy.deepcopy(layout["volumes"]["pc"])
    with pytest.raises(ConfigError):
        resolve_volume(layout, content_root=None)
    assert resolve_volume(layout, content_root=None, volume_name="other").name == "other"
    with pytest.raises(ConfigError):
        resolve_volume(layout, content_root=None, volume_name="missing")


def test_mbr_schema_limits_partitions() -> None:
    structures = [
        {"name": f"p{i}", "type": "83", "size": "1M", "bootable": i == 0}
        for i in range(5)
    ]
    layout = {"volumes": {"pi": {"schema": "mbr", "structure": structures}}}
    with pytest.raises(ConfigError) as exc:
        resolve_volume(layout, content_root=None)
    assert "at most 4 partitions" in str(exc.value)


def test_volume_dict_survives_persistence() -> None:
    volume = resolve_volume(pc_layout(), content_root=None)
    assert Volume.from_dict(volume.to_dict()) == volume


def test_partition_table_script_gpt() -> None:
    volume = resolve_volume(pc_layout(), content_root=None)
    script = partition_table_script(volume)
    lines = script.splitlines()
    assert lines[0] == "label: gpt"
    assert "start=2048, size=2048, type=21686148-6449-6E6F-744E-656564454649, name=\"BIOS Boot\"" in lines
    assert lines[-1].startswith("start=12288, size=16384, type=0FC63DAF-8483-4772-8E79-3D69D8477DE4")


def test_partition_table_script_mbr() -> None:
    layout = {
        "volumes": {
            "pi": {
                "schema": "mbr",
                "structure": [
                    {"name": "boot", "role": "system-boot", "type": "0C", "filesystem": "vfat", "size": "4M"},
                    {"name": "writable", "role": "system-data", "type": "83", "filesystem": "ext4", "size": "8M"},
                ],
            }
        }
    }
    script = partition_table_script(resolve_volume(layout, content_root=None))
    assert "label: dos" in script
    assert "start=2048, size=8192, type=0C, bootable" in script
    assert "start=10240, size=16384, type=83" in script


def test_load_layout_description(tmp_path) -> None:
    path = write_gadget(tmp_path)
    description, base = load_layout_description(str(path))
    assert "pc" in description["volumes"]
    assert base == path.resolve().parent

    bad = tmp_path / "bad.yaml"
    bad.write_text("volumes: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_layout_description(str(bad))
    with pytest.raises(ConfigError):
        load_layout_description(str(tmp_path / "nope.yaml"))


def test_bootable_must_be_a_boolean() -> None:
    layout = pc_layout()
    layout["volumes"]["pc"]["structure"][3]["bootable"] = "false"
    with pytest.raises(ConfigError) as exc:
        resolve_volume(layout, content_root=None)
    assert "bootable must be true or false" in str(exc.value)

    layout["volumes"]["pc"]["structure"][3]["bootable"] = False
    assert not resolve_volume(layout, content_root=None).find_role("system-data").bootable
