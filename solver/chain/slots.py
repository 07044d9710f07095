"""Storage slot derivation for fulfillment orders.

The destination contract keeps orders in a mapping declared at a fixed
storage index (1 on current deployments). For ``orderId`` the slots are:

    base   = keccak256(abi.encode(uint256 orderId, uint256 mappingSlot))
    field  = keccak256(abi.encode(uint256 k, bytes32 base))

with ``k`` in 0=depositId, 1=user, 2=token, 3=amount. These must match the
deployed layout bit for bit or the attested values belong to other storage.
"""

from __future__ import annotations

from eth_abi import encode as abi_encode
from eth_utils import encode_hex, keccak

from solver.core.errors import SlotDerivationError
from solver.core.types import OrderField, StorageSlotMap

UINT256_MAX = 2**256 - 1
DEFAULT_MAPPING_SLOT = 1


def _check_uint256(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise SlotDerivationError(
            f"{name} must be an integer, got {type(value).__name__}",
            context={name: repr(value)},
        )
    if value < 0 or value > UINT256_MAX:
        raise SlotDerivationError(
            f"{name} out of uint256 range: {value}",
            context={name: value},
        )
    return value


class StorageSlotDeriver:
    """Map ``(orderId, field)`` to the storage slot holding that field."""

    def __init__(self, mapping_slot: int = DEFAULT_MAPPING_SLOT) -> None:
        self.mapping_slot = _check_uint256("mapping_slot", mapping_slot)

    def base_slot(self, order_id: int) -> bytes:
        order_id = _check_uint256("order_id", order_id)
        return keccak(abi_encode(["uint256", "uint256"], [order_id, self.mapping_slot]))

    def field_slot(self, order_id: int, field: OrderField | int) -> bytes:
        try:
            offset = OrderField(field)
        except ValueError as exc:
            raise SlotDerivationError(
                f"unknown order field offset: {field!r}",
                context={"field": repr(field)},
            ) from exc
        base = self.base_slot(order_id)
        return keccak(abi_encode(["uint256", "bytes32"], [int(offset), base]))

    def derive(self, order_id: int) -> StorageSlotMap:
        """Derive all four field slots of ``order_id`` from one base hash."""
        base = self.base_slot(order_id)
        slots = {
            f.name.lower(): encode_hex(keccak(abi_encode(["uint256", "bytes32"], [int(f), base])))
            for f in OrderField
        }
        return StorageSlotMap(
            order_id=order_id,
            mapping_slot=self.mapping_slot,
            base_slot=encode_hex(base),
            **slots,
        )


def derive_field_slots(order_id: int, mapping_slot: int = DEFAULT_MAPPING_SLOT) -> StorageSlotMap:
    """Shortcut for ``StorageSlotDeriver(mapping_slot).derive(order_id)``."""
    return StorageSlotDeriver(mapping_slot).derive(order_id)
