"""
Checkpointing as an ordered sequence of ``.npy`` records.

Each component lists its state in a ``CHECKPOINT_FIELDS`` tuple; ``write_state`` saves the fields
in that order with ``numpy.save`` and ``read_state`` loads them back in the same order. The stream
is any binary file object (an open file, ``io.BytesIO``). There is no header and no format version:
a stream can only be read back by the same code and configuration that wrote it.

The random number generator state is saved with ``write_generator`` so a restored model continues
with the same random draws.
"""

from enum import IntEnum

import numpy as np

from laser.malaria.ringbuffer import RingBuffer

__all__ = ["read_frame", "read_generator", "read_state", "write_frame", "write_generator", "write_state"]


def _save(stream, value) -> None:
    if isinstance(value, RingBuffer):
        value = value.values
    np.save(stream, np.asarray(value), allow_pickle=False)

    return


def write_state(stream, obj, fields) -> None:
    """Save ``getattr(obj, name)`` for each name in ``fields``."""
    for name in fields:
        _save(stream, getattr(obj, name))

    return


def read_state(stream, obj, fields) -> None:
    """
    Load the fields written by ``write_state`` back into ``obj``.

    The current value of each attribute determines how the record is restored: ring buffers are
    rebuilt, arrays of matching shape are filled in place (so views held elsewhere stay valid),
    enumerations and scalars are converted back to their type.
    """
    for name in fields:
        data = np.load(stream, allow_pickle=False)
        current = getattr(obj, name)
        if isinstance(current, RingBuffer):
            setattr(obj, name, RingBuffer.from_array(data))
        elif isinstance(current, np.ndarray):
            if current.shape == data.shape:
                current[...] = data
            else:
                setattr(obj, name, data.astype(current.dtype))
        elif isinstance(current, IntEnum):
            setattr(obj, name, type(current)(int(data)))
        elif isinstance(current, (bool, np.bool_)):
            setattr(obj, name, bool(data))
        elif isinstance(current, (int, np.integer)):
            setattr(obj, name, int(data))
        else:
            setattr(obj, name, float(data))

    return


def write_frame(stream, frame, names) -> None:
    """Save the active part (``[..., :count]``) of the named LaserFrame properties."""
    np.save(stream, np.asarray(frame.count), allow_pickle=False)
    for name in names:
        _save(stream, getattr(frame, name)[..., : frame.count])

    return


def read_frame(stream, frame, names) -> None:
    """Load properties written by ``write_frame`` into a frame of the same size."""
    count = int(np.load(stream, allow_pickle=False))
    assert count == frame.count, f"checkpoint holds {count} agents but the frame has {frame.count}"
    for name in names:
        getattr(frame, name)[..., :count] = np.load(stream, allow_pickle=False)

    return


def _split128(value: int) -> list:
    return [value >> 64, value & 0xFFFF_FFFF_FFFF_FFFF]


def write_generator(stream, prng) -> None:
    """Save the state of a PCG64 ``numpy.random.Generator`` as one ``uint64`` record."""
    state = prng.bit_generator.state
    assert state["bit_generator"] in ("PCG64", "PCG64DXSM"), f"cannot checkpoint a {state['bit_generator']} generator"
    words = [
        *_split128(int(state["state"]["state"])),
        *_split128(int(state["state"]["inc"])),
        int(state["has_uint32"]),
        int(state["uinteger"]),
    ]
    np.save(stream, np.array(words, dtype=np.uint64), allow_pickle=False)

    return


def read_generator(stream, prng) -> None:
    """Restore a generator state written by ``write_generator`` into ``prng`` (same bit generator type)."""
    words = [int(word) for word in np.load(stream, allow_pickle=False)]
    state = prng.bit_generator.state
    state["state"] = {"state": (words[0] << 64) | words[1], "inc": (words[2] << 64) | words[3]}
    state["has_uint32"] = words[4]
    state["uinteger"] = words[5]
    prng.bit_generator.state = state

    return
