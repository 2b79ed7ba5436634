import nibabel as nib
import numpy as np


def load_nifti(fname, *, return_img=False):
    """Load data and affine from a NIfTI file.

    Parameters
    ----------
    fname : str or Path
        Full path to the file.
    return_img : bool, optional
        Also return the nibabel image object.

    Returns
    -------
    data : ndarray
    affine : ndarray
        4x4 voxel to world transform.
    img : Nifti1Image
        Only if ``return_img``.
    """
    img = nib.load(str(fname))
    data = img.get_fdata(dtype=np.float32)
    if return_img:
        return data, img.affine, img
    return data, img.affine


def format_descrip(metadata):
    """Render provenance key/values as ``key=value`` pairs joined by ``;``."""
    return ";".join(f"{key}={value:g}" for key, value in metadata.items())


def parse_descrip(descrip):
    """Inverse of :func:`format_descrip`."""
    if isinstance(descrip, (bytes, np.bytes_, np.ndarray)):
        descrip = np.asarray(descrip).item()
        if isinstance(descrip, bytes):
            descrip = descrip.decode("ascii", errors="ignore")
    metadata = {}
    for item in descrip.split(";"):
        key, sep, value = item.partition("=")
        if sep:
            metadata[key.strip()] = float(value)
    return metadata


def save_nifti(fname, data, affine, *, hdr=None, metadata=None):
    """Save data with an affine to a NIfTI file.

    Parameters
    ----------
    fname : str or Path
        Full path of the output file.
    data : ndarray
        Array to save.
    affine : ndarray
        4x4 voxel to world transform.
    hdr : Nifti1Header, optional
        Header to copy the remaining fields from.
    metadata : dict, optional
        Numeric provenance stored in the header ``descrip`` field.
    """
    result_img = nib.Nifti1Image(data, affine, header=hdr)
    result_img.set_data_dtype(data.dtype)
    result_img.header.set_slope_inter(None, None)
    if metadata:
        result_img.header["descrip"] = format_descrip(metadata)
    result_img.to_filename(str(fname))
