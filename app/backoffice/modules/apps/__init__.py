"""Apps marketplace: browse, download, install and manage pluggable modules."""
