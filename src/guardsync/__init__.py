"""guardsync: reconcile fail2ban jails and firewall allow-rules against a desired policy."""

__version__ = "0.1.0"
