"""Market data records, SQLite storage and loaders for monthly archives."""