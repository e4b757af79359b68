# Market data module
