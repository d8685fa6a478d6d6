"""
Package metadata.
"""

__title__ = 'phar-diff'
__description__ = 'Diff tool for PHAR archives.'
__url__ = 'https://github.com/JBamberger/phar-diff'
__version__ = '0.3.0'
__author__ = 'Jan Bamberger'
__author_email__ = 'jan.bamberger@uni-konstanz.de'
__license__ = 'MIT'
__copyright__ = 'Copyright 2023 Jan Bamberger'
