"""SQLite backend: storage, repositories, transactions and migrations."""