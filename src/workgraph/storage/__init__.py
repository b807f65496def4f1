"""SQLite storage plumbing shared by task and job repositories."""
