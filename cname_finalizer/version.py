# cname_finalizer/version.py
__version__ = "1.0.0"
__author__ = "DNS Proxy Team"
