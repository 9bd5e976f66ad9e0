"""A bounded asyncio broadcast channel for passing events between tasks."""