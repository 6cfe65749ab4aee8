"""
Courier - Allows running as `python -m courier`.

Created by orpheus497
"""

from .main import main

if __name__ == "__main__":
    main()
