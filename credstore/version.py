"""credstore Meta information.
   credstore keeps secret credentials in a password-protected container file.
"""
__title__ = 'credstore'
__description__ = (
   'Password-protected, pluggable-cipher credential store '
   'with deployment recipes for its unlock secret.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/credstore'
