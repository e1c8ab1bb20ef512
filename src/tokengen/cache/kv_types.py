"""
KV Cache Types

Models a transformer's recurrent key/value cache as an ordered collection of
per-layer slots addressed by (layer index, role) instead of formatted tensor
names. Tensors follow the Hugging Face layout
[batch, num_heads, seq_len, head_dim].
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Tuple

import torch


class KVRole(str, Enum):
    KEY = "key"
    VALUE = "value"


@dataclass(frozen=True, order=True)
class KVSlot:
    """Address of one cache tensor."""

    layer: int
    role: KVRole


@dataclass
class KVCache:
    """
    Ordered per-layer key/value buffers.

    Attributes:
        entries: Mapping from slot to tensor, kept in (layer, role) order
        seq_len: Number of cached positions
    """

    entries: Dict[KVSlot, torch.Tensor] = field(default_factory=dict)
    seq_len: int = 0

    @classmethod
    def from_layers(
        cls, layers: List[Tuple[torch.Tensor, torch.Tensor]]
    ) -> "KVCache":
        """
        Build a cache from (key, value) pairs, one per layer.

        Raises:
            ValueError: If layers is empty
        """
        if not layers:
            raise ValueError("Cannot create KVCache from empty layers")
        entries: Dict[KVSlot, torch.Tensor] = {}
        for i, (k, v) in enumerate(layers):
            entries[KVSlot(i, KVRole.KEY)] = k
            entries[KVSlot(i, KVRole.VALUE)] = v
        return cls(entries=entries, seq_len=layers[0][0].shape[2])

    @classmethod
    def from_hf_output(cls, past_key_values: Any) -> "KVCache":
        """
        Create a KVCache from a Hugging Face past_key_values object.

        Accepts the legacy tuple-of-pairs layout and Cache objects that can
        be iterated layer by layer.
        """
        if past_key_values is None:
            raise ValueError("Cannot create KVCache from empty past_key_values")
        if hasattr(past_key_values, "to_legacy_cache"):
            layers = list(past_key_values.to_legacy_cache())
        elif hasattr(past_key_values, "layers"):
            layers = [(layer.keys, layer.values) for layer in past_key_values.layers]
        else:
            layers = [(k, v) for k, v in past_key_values]
        return cls.from_layers(layers)

    @property
    def num_layers(self) -> int:
        return len({slot.layer for slot in self.entries})

    def __iter__(self) -> Iterator[Tuple[KVSlot, torch.Tensor]]:
        return iter(sorted(self.entries.items()))

    def __getitem__(self, slot: KVSlot) -> torch.Tensor:
        return self.entries[slot]

    def layer(self, index: int) -> Tuple[torch.Tensor, torch.Tensor]:
        """Return the (key, value) pair of one layer."""
        return (
            self.entries[KVSlot(index, KVRole.KEY)],
            self.entries[KVSlot(index, KVRole.VALUE)],
        )

    def slice_prefix(self, length: int) -> "KVCache":
        """
        Extract the first `length` cached positions.

        Raises:
            ValueError: If length exceeds the cached sequence length
        """
        if length < 0 or length > self.seq_len:
            raise ValueError(
                f"Cannot slice length {length} from cache with seq_len {self.seq_len}"
            )
        return KVCache(
            entries={
                slot: t[:, :, :length, :] for slot, t in self.entries.items()
            },
            seq_len=length,
        )

    def append(self, other: "KVCache") -> "KVCache":
        """Concatenate another cache along the sequence axis."""
        if not self.entries:
            return other
        validate_kv_compatibility(self, other)
        return KVCache(
            entries={
                slot: torch.cat([t, other.entries[slot]], dim=2)
                for slot, t in self.entries.items()
            },
            seq_len=self.seq_len + other.seq_len,
        )

    def get_shapes(self) -> Tuple[Tuple[int, ...], Tuple[int, ...]]:
        """Shapes of the first layer's key and value tensors."""
        if not self.entries:
            return ((), ())
        k, v = self.layer(0)
        return (tuple(k.shape), tuple(v.shape))


def validate_kv_compatibility(base_cache: KVCache, new_cache: KVCache) -> None:
    """
    Validate that two caches can be concatenated.

    Raises:
        ValueError: If slots, dtypes or non-sequence dimensions differ
    """
    if set(base_cache.entries) != set(new_cache.entries):
        raise ValueError(
            f"Layer count mismatch: base={base_cache.num_layers}, "
            f"new={new_cache.num_layers}"
        )

    for slot, base in base_cache.entries.items():
        new = new_cache.entries[slot]
        if base.dtype != new.dtype:
            raise ValueError(f"Dtype mismatch at {slot}: base={base.dtype}, new={new.dtype}")
        if (
            base.shape[0] != new.shape[0]
            or base.shape[1] != new.shape[1]
            or base.shape[3] != new.shape[3]
        ):
            raise ValueError(
                f"Shape mismatch (excluding seq_len) at {slot}: "
                f"base={tuple(base.shape)}, new={tuple(new.shape)}"
            )
