"""Password strength score (0-100)."""

MAX_SCORE = 100


def calculate_strength(password: str) -> int:
    """
    Score a password from 0 to 100.

    Length gives up to 40 points (2 per character); each character class
    present adds a fixed bonus: lowercase 10, uppercase 15, digit 15,
    anything else 20. Appending characters never lowers the score.
    """
    score = min(len(password) * 2, 40)

    if any(c.islower() for c in password):
        score += 10
    if any(c.isupper() for c in password):
        score += 15
    if any(c.isdigit() for c in password):
        score += 15
    if any(not c.isalnum() for c in password):
        score += 20

    return min(score, MAX_SCORE)
