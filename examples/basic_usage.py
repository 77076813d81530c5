#!/usr/bin/env python3
"""
Basic usage example for tdsclient

This example connects to SQL Server, runs a few queries, calls a stored
procedure and bulk-inserts rows. FreeTDS (libsybdb) must be installed; set
TDSCLIENT_FREETDS_LIB if it lives somewhere the loader does not look.
"""

import asyncio
import os
import sys

# Add the parent directory to Python path for development
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'python'))

from tdsclient import Connection, ConnectionPool, ExecutionError, Parameters, PoolConfig


async def main():
    """Main example function."""

    # For SQL Server Authentication:
    connection_string = os.environ.get(
        "TDSCLIENT_CONNECTION_STRING",
        "Server=localhost,1433;Database=tempdb;User Id=sa;Password=YourPassword;Encrypt=optional",
    )

    print("tdsclient - Async API Examples")

    # Example 1: Basic Query with Async Context Manager
    print("\n=== Example 1: Basic Query ===")
    async with Connection(connection_string) as conn:
        result = await conn.execute("SELECT @@VERSION AS sql_version")
        for row in result:
            print(f"SQL Server Version: {row['sql_version'][:100]}...")

        # Example 2: Placeholders are inlined as escaped literals
        print("\n=== Example 2: Placeholders ===")
        result = await conn.execute("SELECT ? AS greeting, ? AS answer", ["O'Hello", 42])
        print(f"  Result: {result.rows()[0].to_dict()}")

        # Example 3: Several result sets and a Markdown rendering
        print("\n=== Example 3: DataSet ===")
        data_set = await conn.data_set("SELECT 1 AS a, 'x' AS b; SELECT GETDATE() AS now")
        for table in data_set:
            print(table.to_markdown())

        # Example 4: Error handling; the connection stays usable
        print("\n=== Example 4: Error Handling ===")
        try:
            await conn.execute("SELECT * FROM non_existent_table")
        except ExecutionError as e:
            print(f"Expected error caught: {e}")

        # Example 5: Stored procedure with an OUTPUT parameter
        print("\n=== Example 5: Stored Procedure ===")
        await conn.execute("""
            CREATE PROCEDURE #add_one @value INT, @result INT OUTPUT AS
            BEGIN SET @result = @value + 1; RETURN 0; END
        """)
        result = await conn.execute_rpc("#add_one", Parameters().add(41, name="value").add_output("result", 0))
        print(f"  @result = {result.output('result')}, return status = {result.return_status}")

        # Example 6: Bulk insert
        print("\n=== Example 6: Bulk Insert ===")
        await conn.execute("CREATE TABLE #people (id INT, name NVARCHAR(50))")
        inserted = await conn.bulk_insert("#people", [{"id": i, "name": f"person {i}"} for i in range(100)])
        print(f"  Inserted {inserted} rows")

    # Example 7: Concurrent queries through a pool
    print("\n=== Example 7: Connection Pool ===")
    async with ConnectionPool(connection_string, PoolConfig.development()) as pool:
        async def single_query(query_id: int):
            async with pool.connection() as conn:
                result = await conn.execute(f"SELECT {query_id} AS id")
                return result.rows()[0]["id"]

        ids = await asyncio.gather(*(single_query(i) for i in range(10)))
        print(f"  Completed queries: {ids}")


if __name__ == "__main__":
    asyncio.run(main())
