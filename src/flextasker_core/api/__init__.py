"""HTTP surface of the FlexTasker data layer."""
