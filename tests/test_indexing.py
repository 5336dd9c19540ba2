import numpy as np
import pytest

from kernelgrad.indexing import (
    ShapeDescriptor,
    physical_offsets,
    restrided,
    to_logical,
    to_physical,
)


def random_dims(rng, max_nd=4, max_size=5):
    nd = int(rng.integers(1, max_nd + 1))
    return tuple(int(n) for n in rng.integers(1, max_size + 1, size=nd))


def test_to_physical_matches_numpy_strides(rng):
    for _ in range(10):
        dims = random_dims(rng)
        x = np.arange(int(np.prod(dims))).reshape(dims)
        order = tuple(rng.permutation(len(dims)))
        xt = x.transpose(order)
        strides = tuple(s // x.itemsize for s in xt.strides)

        for i, expected in enumerate(xt.reshape(-1)):
            assert to_physical(i, xt.shape, strides) == expected


def test_round_trip_without_broadcast(rng):
    for _ in range(10):
        dims = random_dims(rng)
        desc = ShapeDescriptor.contiguous(dims).permute(tuple(rng.permutation(len(dims))))
        for i in range(desc.numel):
            assert to_logical(to_physical(i, desc.dims, desc.strides), desc.dims, desc.strides) == i


def test_broadcast_axis_decodes_to_zero():
    dims = (4, 3)
    strides = (0, 1)
    for offset in range(3):
        logical = to_logical(offset, dims, strides)
        assert logical // 3 == 0
        assert logical % 3 == offset


def test_restrided_maps_to_broadcast_output_slot():
    # input (2, 2) contiguous, output reduced over axis 1 and broadcast back
    dims = (2, 2)
    assert [restrided(i, dims, (2, 1), (1, 0)) for i in range(4)] == [0, 0, 1, 1]


def test_physical_offsets_match_scalar(rng):
    for _ in range(5):
        dims = random_dims(rng)
        desc = ShapeDescriptor.contiguous(dims).permute(tuple(rng.permutation(len(dims))))
        offsets = physical_offsets(desc.dims, desc.strides)
        assert offsets.tolist() == [to_physical(i, desc.dims, desc.strides) for i in range(desc.numel)]


def test_zero_dim_descriptor():
    assert to_physical(0, (), ()) == 0
    assert to_logical(0, (), ()) == 0
    assert physical_offsets((), ()).tolist() == [0]


def test_contiguous_strides():
    assert ShapeDescriptor.contiguous((3, 2)).strides == (2, 1)
    assert ShapeDescriptor.contiguous((2, 3, 4)).strides == (12, 4, 1)
    assert ShapeDescriptor.contiguous((2, 3)).is_contiguous()


def test_broadcast_to_sets_zero_strides():
    desc = ShapeDescriptor.contiguous((3, 1)).broadcast_to((2, 3, 4))
    assert desc.dims == (2, 3, 4)
    assert desc.strides == (0, 1, 0)
    assert desc.physical_numel == 3
    assert not desc.is_contiguous()


def test_broadcast_to_rejects_incompatible():
    with pytest.raises(ValueError):
        ShapeDescriptor.contiguous((3, 2)).broadcast_to((3, 4))
    with pytest.raises(ValueError):
        ShapeDescriptor.contiguous((2, 3)).broadcast_to((3,))


def test_descriptor_validation():
    with pytest.raises(ValueError):
        ShapeDescriptor((2, 3), (1,))
    with pytest.raises(ValueError):
        ShapeDescriptor.contiguous((2, 3)).permute((0, 0))
