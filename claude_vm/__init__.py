"""Run coding agents inside disposable Lima VMs, one clone per invocation."""

__version__ = '0.1.0'
