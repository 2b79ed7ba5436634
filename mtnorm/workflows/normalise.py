import numpy as np

from mtnorm.io.image import load_nifti, save_nifti
from mtnorm.normalise.mtnormalise import (
    DEFAULT_MAIN_ITER,
    DEFAULT_POLY_ORDER,
    DEFAULT_REFERENCE_VALUE,
    mtnormalise,
)
from mtnorm.utils.logging import logger
from mtnorm.workflows.workflow import Workflow

DEFAULT_PARAMS = {
    "order": DEFAULT_POLY_ORDER,
    "niter": DEFAULT_MAIN_ITER,
    "reference": DEFAULT_REFERENCE_VALUE,
    "balanced": False,
    "num_threads": None,
}


class MTNormaliseFlow(Workflow):
    def run(
        self,
        input_files,
        mask,
        order=None,
        niter=None,
        reference=None,
        balanced=None,
        num_threads=None,
        config_file=None,
        check_norm=None,
        check_mask=None,
        check_factors=None,
    ):
        """Multi-tissue informed log-domain intensity normalisation.

        Inputs any number of tissue components (e.g. from multi-tissue CSD)
        and outputs corresponding normalised tissue components. The
        normalisation can vary smoothly in space to absorb residual intensity
        inhomogeneities. Areas with exceptionally low or high combined tissue
        contributions are treated as outliers and excluded as the estimate
        improves.

        Parameters
        ----------
        input_files : list of string or Path
            Input and output tissue files given as pairs, e.g.
            ``wm.nii.gz wm_norm.nii.gz gm.nii.gz gm_norm.nii.gz``.
        mask : string or Path
            Mask of the voxels used to compute the normalisation, optimally a
            brain mask.
        order : int, optional
            Maximum order (0 to 3) of the polynomial basis of the log-domain
            normalisation field. Order 0 allows no spatial variation.
        niter : int, optional
            Number of iterations.
        reference : float, optional
            Positive reference value to which the summed tissue compartments
            are normalised. Defaults to the SH DC term for unit angular
            integral.
        balanced : bool, optional
            Incorporate the per-tissue balance factors into the scaling of
            the output images.
        num_threads : int, optional
            Number of threads. None uses all CPUs.
        config_file : string or Path, optional
            TOML file whose ``[mtnormalise]`` table provides defaults for
            order, niter, reference, balanced and num_threads.
        check_norm : string or Path, optional
            Output the final estimated normalisation field.
        check_mask : string or Path, optional
            Output the final mask, outliers excluded.
        check_factors : string or Path, optional
            Output the tissue balance factors, one per line.

        Returns
        -------
        fit : MTNormaliseFit
        """
        input_files = [str(f) for f in np.atleast_1d(input_files)]
        if len(input_files) == 0 or len(input_files) % 2:
            raise ValueError(
                "The number of arguments must be even, provided as pairs of "
                "each input and its corresponding output file."
            )

        params = dict(DEFAULT_PARAMS)
        params.update(
            self.load_config(
                config_file, section="mtnormalise", allowed_keys=DEFAULT_PARAMS
            )
        )
        cli_params = {
            "order": order,
            "niter": niter,
            "reference": reference,
            "balanced": balanced,
            "num_threads": num_threads,
        }
        params.update({k: v for k, v in cli_params.items() if v is not None})

        in_paths = input_files[0::2]
        out_paths = self.resolve_outputs(input_files[1::2])
        checks = {
            "check_norm": check_norm,
            "check_mask": check_mask,
            "check_factors": check_factors,
        }
        check_paths = dict(
            zip(
                [k for k, v in checks.items() if v],
                self.resolve_outputs([v for v in checks.values() if v]),
            )
        )

        self.flat_outputs = out_paths + list(check_paths.values())
        self.last_generated_outputs = dict(
            zip([f"out_{i}" for i in range(len(out_paths))], out_paths)
        )
        self.last_generated_outputs.update(check_paths)
        if not self.manage_output_overwrite():
            raise ValueError(
                "All output paths exists."
                " If you want to overwrite "
                "please use the --force option."
            )
        for path in self.flat_outputs:
            path.parent.mkdir(parents=True, exist_ok=True)

        tissues, images = [], []
        affine = None
        for fpath in in_paths:
            logger.info(f"Loading tissue compartment {fpath}")
            data, img_affine, img = load_nifti(fpath, return_img=True)
            if data.ndim > 4:
                raise ValueError(
                    f'Input image "{fpath}" contains more than 4 dimensions.'
                )
            if affine is None:
                affine = img_affine
            tissues.append(data)
            images.append(img)

        mask_data, _ = load_nifti(mask)
        logger.info(f"Using mask {mask}")

        balanced = bool(params["balanced"])
        normalised, fit = mtnormalise(
            tissues,
            mask_data > 0,
            affine=affine,
            order=params["order"],
            niter=params["niter"],
            reference_value=params["reference"],
            balanced=balanced,
            num_threads=params["num_threads"],
            return_fit=True,
        )

        if "check_norm" in check_paths:
            save_nifti(
                check_paths["check_norm"],
                fit.norm_field_image.astype(np.float32),
                affine,
            )
            logger.info(f"Normalisation field saved as {check_paths['check_norm']}")

        if "check_mask" in check_paths:
            save_nifti(check_paths["check_mask"], fit.mask.astype(np.uint8), affine)
            logger.info(f"Final mask saved as {check_paths['check_mask']}")

        if "check_factors" in check_paths:
            np.savetxt(check_paths["check_factors"], fit.balance_factors)
            logger.info(f"Balance factors saved as {check_paths['check_factors']}")

        for j, (out_path, data, img) in enumerate(zip(out_paths, normalised, images)):
            save_nifti(
                out_path,
                data.astype(np.float32),
                img.affine,
                hdr=img.header,
                metadata=fit.metadata(j, balanced=balanced),
            )
            logger.info(f"Normalised tissue saved as {out_path}")

        return fit
