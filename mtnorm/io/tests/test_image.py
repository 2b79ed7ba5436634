"""Tests for mtnorm.io.image."""

import nibabel as nib
import numpy as np
import pytest

from mtnorm.io.image import (
    format_descrip,
    load_nifti,
    parse_descrip,
    save_nifti,
)


def _affine():
    affine = np.diag([2.0, 2.0, 2.5, 1.0])
    affine[:3, 3] = [-20, -30, 10]
    return affine


def test_save_load_nifti(tmp_path):
    rng = np.random.default_rng(0)
    data = rng.uniform(0, 1, (4, 5, 6)).astype(np.float32)
    fname = tmp_path / "vol.nii.gz"

    save_nifti(fname, data, _affine())
    loaded, affine, img = load_nifti(fname, return_img=True)

    assert loaded.dtype == np.float32
    np.testing.assert_array_equal(loaded, data)
    np.testing.assert_allclose(affine, _affine())
    assert isinstance(img, nib.Nifti1Image)
    np.testing.assert_allclose(img.header.get_zooms(), [2.0, 2.0, 2.5])
    assert len(load_nifti(fname)) == 2


def test_save_nifti_keeps_integer_dtype(tmp_path):
    mask = np.zeros((3, 3, 3), dtype=np.uint8)
    mask[1, 1, 1] = 1
    fname = tmp_path / "mask.nii.gz"
    save_nifti(fname, mask, np.eye(4))

    assert nib.load(fname).get_data_dtype() == np.uint8
    loaded, _ = load_nifti(fname)
    np.testing.assert_array_equal(loaded, mask)


def test_save_nifti_with_header_and_metadata(tmp_path):
    data = np.ones((3, 3, 3, 2), dtype=np.float32)
    src = nib.Nifti1Image(data, _affine())
    src.header.set_xyzt_units("mm", "sec")

    fname = tmp_path / "norm.nii"
    metadata = {"lognorm_scale": 3.25, "lognorm_balance": 0.5}
    save_nifti(fname, data * 2, src.affine, hdr=src.header, metadata=metadata)

    img = nib.load(fname)
    assert img.shape == (3, 3, 3, 2)
    assert img.header.get_xyzt_units() == ("mm", "sec")
    assert parse_descrip(img.header["descrip"]) == pytest.approx(metadata)
    np.testing.assert_array_equal(img.get_fdata(), 2.0)


def test_format_descrip():
    assert format_descrip({"a": 1.5, "b": 2}) == "a=1.5;b=2"
    assert format_descrip({}) == ""


def test_parse_descrip():
    assert parse_descrip("lognorm_scale=2.5;lognorm_balance=0.75") == {
        "lognorm_scale": 2.5,
        "lognorm_balance": 0.75,
    }
    assert parse_descrip(b"x=1") == {"x": 1.0}
    assert parse_descrip("free text") == {}
    assert parse_descrip("") == {}
