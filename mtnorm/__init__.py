"""Multi-tissue informed log-domain intensity normalisation.

Subpackages
-----------
::

 io                     -- Loading and saving of NIfTI volumes
 normalise              -- Normalisation field and balance factor estimation
 utils                  -- Logging and grid-parallel helpers
 workflows              -- File based command line workflows
"""

__version__ = "0.1.0"
