"""Entry point for ``python -m dicom_deid``."""

import sys

from dicom_deid.cli import main

if __name__ == "__main__":
    sys.exit(main())
