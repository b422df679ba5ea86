"""Tests for swap classification and the temporary swap file."""

from __future__ import annotations

import os

from nixos_inplace.swap import (
    ExistingSwapDevice,
    NeedsTemporarySwap,
    SwapAbsent,
    TemporarySwapFile,
    classify_swap,
)

from tests.fakes import fail, make_runner, ok

SWAPON = ("swapon", "--show=NAME,TYPE", "--noheadings", "--raw")


def test_block_device_swap_is_reused() -> None:
    runner = make_runner({SWAPON: ok("/dev/sda2 partition\n")}, block_devices=["/dev/sda2"])

    assert classify_swap(runner) == ExistingSwapDevice(path="/dev/sda2")


def test_swap_file_and_zram_do_not_count() -> None:
    runner = make_runner(
        {SWAPON: ok("/swapfile file\n/dev/zram0 partition\n")},
        block_devices=["/dev/zram0"],
    )

    assert classify_swap(runner) == NeedsTemporarySwap()


def test_suppressed_swap_is_absent() -> None:
    runner = make_runner({SWAPON: ok("")})

    assert classify_swap(runner, suppressed=True) == SwapAbsent()


def test_existing_device_wins_over_suppression() -> None:
    runner = make_runner({SWAPON: ok("/dev/vdb partition\n")}, block_devices=["/dev/vdb"])

    assert classify_swap(runner, suppressed=True) == ExistingSwapDevice(path="/dev/vdb")


def test_failing_swapon_means_no_active_swap() -> None:
    runner = make_runner({SWAPON: fail()})

    assert classify_swap(runner) == NeedsTemporarySwap()


def test_temporary_swap_file_lifecycle(tmp_path) -> None:
    calls = []
    swap = TemporarySwapFile(make_runner(calls=calls), directory=str(tmp_path), size_mib=8)

    assert swap.provision() is True
    path = swap.path
    assert path is not None and os.path.dirname(path) == str(tmp_path)
    assert [call[0] for call in calls] == ["dd", "chmod", "mkswap", "swapon"]
    assert ("dd", "if=/dev/zero", f"of={path}", "bs=1M", "count=8") in calls

    assert swap.teardown() is True
    assert calls[-1] == ("swapoff", path)
    assert not os.path.exists(path)


def test_provision_failure_is_not_fatal(tmp_path) -> None:
    runner = make_runner()
    swap = TemporarySwapFile(runner, directory=str(tmp_path))
    runner.call = lambda cmd, env=None: 1 if cmd[0] == "mkswap" else 0

    assert swap.provision() is False
    assert swap.active is False
    assert swap.teardown() is True
    assert list(tmp_path.iterdir()) == []


def test_teardown_failure_is_reported_not_raised(tmp_path) -> None:
    swap = TemporarySwapFile(make_runner(), directory=str(tmp_path))
    assert swap.provision() is True
    swap.runner.call = lambda cmd, env=None: 1

    assert swap.teardown() is False
    assert swap.path is not None and os.path.exists(swap.path)


def test_teardown_without_provision_is_a_no_op(tmp_path) -> None:
    swap = TemporarySwapFile(make_runner(), directory=str(tmp_path))

    assert swap.teardown() is True
