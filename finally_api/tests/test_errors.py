import unittest

from sqlalchemy.exc import IntegrityError

from finally_api.errors import from_integrity_error


class DriverError(Exception):
    def __init__(self, message: str, pgcode: str | None = None) -> None:
        super().__init__(message)
        self.pgcode = pgcode


def integrity_error(message: str, pgcode: str | None = None) -> IntegrityError:
    return IntegrityError("INSERT INTO assets ...", {}, DriverError(message, pgcode))


class IntegrityErrorMappingTests(unittest.TestCase):
    def test_foreign_key_violation_is_not_a_duplicate(self) -> None:
        error = from_integrity_error(
            integrity_error('insert violates constraint "assets_user_id_fkey"', "23503")
        )

        self.assertEqual(error.code, "FOREIGN_KEY_CONSTRAINT")
        self.assertEqual(error.status_code, 400)

    def test_unique_violation_conflicts(self) -> None:
        error = from_integrity_error(
            integrity_error('duplicate key value violates "uq_assets_user_name"', "23505")
        )

        self.assertEqual(error.code, "UNIQUE_CONSTRAINT")
        self.assertEqual(error.status_code, 409)

    def test_sqlite_messages_are_classified_without_sqlstate(self) -> None:
        unique = from_integrity_error(integrity_error("UNIQUE constraint failed: assets.asset_name"))
        foreign = from_integrity_error(integrity_error("FOREIGN KEY constraint failed"))

        self.assertEqual(unique.code, "UNIQUE_CONSTRAINT")
        self.assertEqual(foreign.code, "FOREIGN_KEY_CONSTRAINT")

    def test_other_constraints_are_database_errors(self) -> None:
        error = from_integrity_error(
            integrity_error('null value in column "asset_name" violates not-null constraint', "23502")
        )

        self.assertEqual(error.code, "DATABASE_ERROR")
        self.assertEqual(error.status_code, 500)


if __name__ == "__main__":
    unittest.main()
