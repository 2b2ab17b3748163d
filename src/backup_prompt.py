"""
Interactive selection prompts.

Numbered menus on stdin/stdout. Every prompt returns None when the operator
cancels: empty input, EOF, Ctrl-C, or the explicit "Cancel" entry of the
removal prompt.
"""

CHOICE_YES = "Yes"
CHOICE_NO = "No"
CHOICE_CANCEL = "Cancel"
REMOVAL_CHOICES = [CHOICE_YES, CHOICE_NO, CHOICE_CANCEL]


def _match_choice(answer, items):
    if answer.isdigit():
        index = int(answer)
        if 1 <= index <= len(items):
            return items[index - 1]
        return None
    if answer in items:
        return answer
    matches = [item for item in items if item.lower() == answer.lower()]
    if len(matches) == 1:
        return matches[0]
    return None


def select_option(label, items, input_fn=input, output_fn=print):
    """
    Shows a numbered menu and returns the chosen item.

    The operator may type the number or the item text. Invalid answers
    re-prompt; empty input, EOF and Ctrl-C return None.
    """
    items = list(items)
    if not items:
        return None

    output_fn(f"{label}:")
    for idx, item in enumerate(items, 1):
        output_fn(f"  {idx:>3}) {item}")

    while True:
        try:
            answer = input_fn("Enter number (empty to cancel): ")
        except (EOFError, KeyboardInterrupt):
            output_fn("")
            return None

        answer = answer.strip()
        if not answer:
            return None

        choice = _match_choice(answer, items)
        if choice is not None:
            return choice
        output_fn(f"Invalid choice: {answer}")


def choose_profile(names, input_fn=input, output_fn=print):
    return select_option("Select Config", names, input_fn, output_fn)


def choose_mailbox(names, input_fn=input, output_fn=print):
    return select_option("Select Mailbox", names, input_fn, output_fn)


def choose_removal(input_fn=input, output_fn=print):
    """Returns True (remove), False (keep) or None (cancel)."""
    choice = select_option(
        "Do you like to remove messages on server after download?", REMOVAL_CHOICES, input_fn, output_fn
    )
    if choice is None or choice == CHOICE_CANCEL:
        return None
    return choice == CHOICE_YES
