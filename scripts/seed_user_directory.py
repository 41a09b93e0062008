import psycopg2
from psycopg2.extras import Json, execute_values
from event_generator import generate_user

DSN = "host=localhost port=5432 dbname=notifications user=postgres password=postgres"
NUM_RECORDS = 1000
BATCH_SIZE = 100


def generate_record(index):
    user = generate_user(index)
    external_id = user.pop("id")
    return (external_id, Json(user))


with psycopg2.connect(DSN) as conn:
    with conn.cursor() as cur:
        for batch_start in range(1, NUM_RECORDS + 1, BATCH_SIZE):
            batch_end = min(batch_start + BATCH_SIZE, NUM_RECORDS + 1)
            batch = [generate_record(i) for i in range(batch_start, batch_end)]

            execute_values(
                cur,
                """
                INSERT INTO user_directory (external_id, doc)
                VALUES %s
                ON CONFLICT (external_id) DO UPDATE SET doc = user_directory.doc || EXCLUDED.doc
                """,
                batch,
            )

            conn.commit()

print(f"Seeded {NUM_RECORDS} users (U0001..U{NUM_RECORDS:04d})")
