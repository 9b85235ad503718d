# Core configuration, database access and exceptions
