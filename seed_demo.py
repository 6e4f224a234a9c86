# seed_demo.py
import os
from datetime import datetime, timedelta, timezone

import requests

BASE_URL = os.getenv("LIBRARY_BASE_URL", "http://localhost:5000")
SERVICE_API_KEY = os.getenv("SERVICE_API_KEY", "dev-service-key")

BOOKS = [
    {
        "isbn": "978-0132350884",
        "title": "Clean Code",
        "author": "Robert C. Martin",
        "publisher": "Prentice Hall",
        "category": "Software Engineering",
        "price": "42.00",
        "borrow_price": "1.50",
        "borrow_fine": "0.50",
    },
    {
        "isbn": "978-0201616224",
        "title": "The Pragmatic Programmer",
        "author": "Andrew Hunt, David Thomas",
        "publisher": "Addison-Wesley",
        "category": "Software Engineering",
        "price": "45.00",
        "borrow_price": "1.50",
        "borrow_fine": "0.50",
    },
    {
        "isbn": "978-0262033848",
        "title": "Introduction to Algorithms",
        "author": "Cormen, Leiserson, Rivest, Stein",
        "publisher": "MIT Press",
        "category": "Computer Science",
        "price": "120.00",
        "borrow_price": "3.00",
        "borrow_fine": "1.00",
    },
    {
        "isbn": "978-1491950357",
        "title": "Designing Data-Intensive Applications",
        "author": "Martin Kleppmann",
        "publisher": "O'Reilly Media",
        "category": "Computer Science",
        "price": "60.00",
        "borrow_price": "2.00",
        "borrow_fine": "0.75",
    },
    {
        "isbn": "978-1617296086",
        "title": "Kubernetes in Action",
        "author": "Marko Luksa",
        "publisher": "Manning",
        "category": "Operations",
        "price": "55.00",
        "borrow_price": "2.00",
        "borrow_fine": "0.75",
    },
]

USERS = [
    {
        "user_name": "alice",
        "email": "alice@example.com",
        "full_name": "Alice Example",
        "wallet_balance": "500.00",
    },
    {
        "user_name": "bob",
        "email": "bob@example.com",
        "full_name": "Bob Example",
        "wallet_balance": "150.00",
    },
]


def check_service(url):
    """Hit /api/health and return True/False."""
    health_url = f"{url.rstrip('/')}/api/health"
    try:
        r = requests.get(health_url, timeout=3)
        print(f"[CHECK] {health_url} -> {r.status_code}")
        return r.ok
    except Exception as e:
        print(f"[ERROR] service not reachable at {health_url}: {e}")
        return False


def seed_books():
    print("\n== Seeding books ==")
    book_ids = []
    for i, book in enumerate(BOOKS, start=1):
        payload = dict(book)
        # vary copies per title to make availability more interesting
        payload["total_copies"] = 2 + (i % 4)  # 2–5 copies

        try:
            resp = requests.post(
                f"{BASE_URL}/api/books",
                headers={"X-API-Key": SERVICE_API_KEY},
                json=payload,
                timeout=5,
            )
            print(f"  [{i:02}] {book['title']} -> {resp.status_code}")
            if resp.ok:
                book_ids.append(resp.json()["book"]["id"])
            else:
                print(f"      Body: {resp.text.strip()}")
        except Exception as e:
            print(f"  [{i:02}] {book['title']} -> FAILED: {e}")
    return book_ids


def seed_users():
    print("\n== Registering users ==")
    user_ids = []
    for user in USERS:
        try:
            resp = requests.post(
                f"{BASE_URL}/api/users",
                headers={"X-API-Key": SERVICE_API_KEY},
                json=user,
                timeout=5,
            )
            print(f"  {user['user_name']}: {resp.status_code}")
            if resp.ok:
                user_ids.append(resp.json()["id"])
            else:
                print(f"      Body: {resp.text.strip()}")
        except Exception as e:
            print(f"  {user['user_name']}: FAILED -> {e}")
    return user_ids


def seed_activity(user_ids, book_ids):
    print("\n== Sample activity ==")
    due = (datetime.now(timezone.utc) + timedelta(days=14)).isoformat()

    resp = requests.post(
        f"{BASE_URL}/api/borrow",
        json={"borrowed_by": user_ids[0], "borrowed_book": book_ids[0], "expected_return_date": due},
        timeout=5,
    )
    print(f"  borrow -> {resp.status_code}")

    resp = requests.post(
        f"{BASE_URL}/api/books/purchase",
        json={"userId": user_ids[0], "bookId": book_ids[1], "quantity": 1},
        timeout=5,
    )
    print(f"  full purchase -> {resp.status_code}")

    resp = requests.post(
        f"{BASE_URL}/api/books/purchase",
        json={
            "userId": user_ids[-1],
            "bookId": book_ids[2],
            "quantity": 1,
            "payment_type": "installment",
            "installment_months": 6,
        },
        timeout=5,
    )
    print(f"  installment purchase -> {resp.status_code}")


def main():
    print("Checking library service...")
    if not check_service(BASE_URL):
        print(f"\nLibrary service is not reachable at {BASE_URL}.")
        return

    book_ids = seed_books()
    user_ids = seed_users()

    if len(book_ids) >= 3 and user_ids:
        seed_activity(user_ids, book_ids)
    else:
        print("\nCatalog already seeded or partially failed, skipping sample activity.")

    print("\nDone.")
    print("Try hitting:")
    print(f"  {BASE_URL}/api/books")
    print(f"  {BASE_URL}/api/earnings?timeframe=month")


if __name__ == "__main__":
    main()
