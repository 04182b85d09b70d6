from __future__ import annotations

import hashlib
import sys
import types

import numpy as np
import pytest

from xelis_miner.mining.errors import OracleError
from xelis_miner.mining.oracle import (SCRATCHPAD_WORDS, CallableOracle,
                                       builtin_names, load_oracle)


@pytest.fixture
def binding(monkeypatch):
    """Register a throwaway binding module importable as `fake_xelis_binding`."""
    mod = types.ModuleType("fake_xelis_binding")

    def xelis_hash_v2(work, scratchpad):
        scratchpad[0] += 1
        return hashlib.blake2b(work, digest_size=32).digest()

    mod.xelis_hash_v2 = xelis_hash_v2
    mod.not_callable = 42
    monkeypatch.setitem(sys.modules, "fake_xelis_binding", mod)
    return mod


class TestBuiltin:
    def test_sha3_dev(self, caplog) -> None:
        assert "sha3-dev" in builtin_names()
        oracle = load_oracle(" sha3-dev ")
        work = bytes(112)
        assert oracle(work, oracle.new_scratchpad()) == hashlib.sha3_256(work).digest()
        assert oracle.byte_order == "big"
        assert "shares will not validate" in caplog.text


class TestImportPath:
    def test_loads_callable_with_defaults(self, binding) -> None:
        oracle = load_oracle("fake_xelis_binding:xelis_hash_v2")
        assert isinstance(oracle, CallableOracle)
        assert oracle.name == "fake_xelis_binding:xelis_hash_v2"
        assert oracle.byte_order == "big"
        pad = oracle.new_scratchpad()
        assert pad.dtype == np.uint64
        assert pad.shape == (SCRATCHPAD_WORDS,)
        digest = oracle(bytes(112), pad)
        assert len(digest) == 32
        assert pad[0] == 1

    def test_scratchpads_are_independent(self, binding) -> None:
        oracle = load_oracle("fake_xelis_binding:xelis_hash_v2")
        a, b = oracle.new_scratchpad(), oracle.new_scratchpad()
        a[0] = 7
        assert b[0] == 0

    def test_module_overrides(self, binding) -> None:
        binding.BYTE_ORDER = "LITTLE"
        binding.SCRATCHPAD_WORDS = 16
        oracle = load_oracle("fake_xelis_binding:xelis_hash_v2")
        assert oracle.byte_order == "little"
        assert oracle.new_scratchpad().shape == (16,)
        assert oracle.digest_to_int(b"\x01" + b"\x00" * 31) == 1

    @pytest.mark.parametrize(
        "spec",
        [
            "no-such-builtin",
            "fake_xelis_binding:",
            ":xelis_hash_v2",
            "fake_xelis_binding:missing",
            "fake_xelis_binding:not_callable",
            "definitely_not_installed_module_xyz:hash",
        ],
    )
    def test_bad_specs(self, binding, spec: str) -> None:
        with pytest.raises(OracleError) as exc:
            load_oracle(spec)
        assert exc.value.fatal

    def test_bad_byte_order(self, binding) -> None:
        binding.BYTE_ORDER = "middle"
        with pytest.raises(OracleError):
            load_oracle("fake_xelis_binding:xelis_hash_v2")
