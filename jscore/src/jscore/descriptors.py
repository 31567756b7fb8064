"""
Miniscript-style output descriptors for contracts.

Contracts are encoded as a ``wsh(thresh(1, ...))`` of their spend paths:

    key path      multi(n, keys...)
    hash path     aj:and_v(v:multi(n, keys...), sha256(H))   or v:pk for one key
    refund path   snj:and_v(v:pk(K), older(t))

The descriptor is informational for wallets; the protocol itself only ever
compares contracts structurally.
"""

from __future__ import annotations

from jscore.contracts import validate
from jscore.models import Contract, HashPath, KeyPath, RefundPath, SpendableOutputDescriptor


def _keys_fragment(participants: tuple[str, ...]) -> str:
    if len(participants) == 1:
        return f"pk({participants[0]})"
    return f"multi({len(participants)},{','.join(participants)})"


class DescriptorScriptEngine:
    def encode(self, contract: Contract) -> SpendableOutputDescriptor:
        validate(contract)

        fragments: list[str] = []
        for path in contract.paths:
            if isinstance(path, KeyPath):
                fragments.insert(0, _keys_fragment(path.participants))
            elif isinstance(path, RefundPath):
                fragments.append(f"snj:and_v(v:pk({path.owner}),older({path.relative_timelock}))")
            elif isinstance(path, HashPath):
                fragments.append(
                    f"aj:and_v(v:{_keys_fragment(path.participants)},"
                    f"sha256({path.hash_commitment}))"
                )

        return SpendableOutputDescriptor(
            contract_id=contract.contract_id,
            descriptor=f"wsh(thresh(1,{','.join(fragments)}))",
        )


__all__ = ["DescriptorScriptEngine"]
