"""
Operation state machine: typed drafts, explicit step sequences.

Each operation kind has its own draft dataclass. A draft holds one
optional field per step, and its current step is derived from which
fields are still unset. Nothing stores a step tag that could drift out of
sync with the data.

Step sequences (* = button-driven selection):

    single_payment:   recipient_type* → recipient → token_address → amount
                      → priority_fee → priority* → confirm
    disperse_payment: recipient_count* → (recipient_type* → recipient_info
                      → recipient_amount) × count → token_address
                      → total_amount → priority_fee → executor_address
                      → priority* → confirm
    public_staking:   action* → staking_address → amount → priority_fee
                      → priority* → confirm
    presale_staking:  action* → staking_address → amount → staking_nonce
                      → priority_fee → priority* → signature_mode*
                      → confirm

``accept(step, raw)`` validates first and mutates only on success, so a
rejected input leaves both the step and every field unchanged.
``complete()`` returns an immutable record once every field is set.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, fields
from decimal import Decimal
from enum import StrEnum
from typing import Any, ClassVar

from evvm_signer.errors import AmountMismatch, MissingParameter
from evvm_signer.messages import Recipient, amounts_match, sum_amounts
from evvm_signer.validation import (
    ACTIONS,
    MAX_RECIPIENTS,
    MIN_RECIPIENTS,
    PRIORITIES,
    RECIPIENT_TYPES,
    SIGNATURE_MODES,
    ValidationResult,
    validate_action,
    validate_address,
    validate_amount,
    validate_nonce,
    validate_optional_address,
    validate_priority,
    validate_priority_fee,
    validate_recipient_count,
    validate_recipient_type,
    validate_signature_mode,
    validate_token_address,
    validate_username,
)

Validator = Callable[[Any], ValidationResult]


class OperationKind(StrEnum):
    SINGLE_PAYMENT = "single_payment"
    DISPERSE_PAYMENT = "disperse_payment"
    PUBLIC_STAKING = "public_staking"
    PRESALE_STAKING = "presale_staking"


class Step(StrEnum):
    RECIPIENT_TYPE = "recipient_type"
    RECIPIENT = "recipient"
    RECIPIENT_COUNT = "recipient_count"
    RECIPIENT_INFO = "recipient_info"
    RECIPIENT_AMOUNT = "recipient_amount"
    TOKEN_ADDRESS = "token_address"
    AMOUNT = "amount"
    TOTAL_AMOUNT = "total_amount"
    PRIORITY_FEE = "priority_fee"
    EXECUTOR_ADDRESS = "executor_address"
    PRIORITY = "priority"
    ACTION = "action"
    STAKING_ADDRESS = "staking_address"
    STAKING_NONCE = "staking_nonce"
    SIGNATURE_MODE = "signature_mode"
    CONFIRM = "confirm"


# Steps answered by choosing one of a fixed set of options.
STEP_CHOICES: dict[Step, tuple[str, ...]] = {
    Step.RECIPIENT_TYPE: RECIPIENT_TYPES,
    Step.RECIPIENT_COUNT: tuple(str(n) for n in range(MIN_RECIPIENTS, MAX_RECIPIENTS + 1)),
    Step.PRIORITY: PRIORITIES,
    Step.ACTION: ACTIONS,
    Step.SIGNATURE_MODE: SIGNATURE_MODES,
}

BUTTON_STEPS = frozenset(STEP_CHOICES)

STEP_VALIDATORS: dict[Step, Validator] = {
    Step.RECIPIENT_TYPE: validate_recipient_type,
    Step.RECIPIENT_COUNT: validate_recipient_count,
    Step.RECIPIENT_AMOUNT: validate_amount,
    Step.TOKEN_ADDRESS: validate_token_address,
    Step.AMOUNT: validate_amount,
    Step.TOTAL_AMOUNT: validate_amount,
    Step.PRIORITY_FEE: validate_priority_fee,
    Step.EXECUTOR_ADDRESS: validate_optional_address,
    Step.PRIORITY: validate_priority,
    Step.ACTION: validate_action,
    Step.STAKING_ADDRESS: validate_address,
    Step.STAKING_NONCE: validate_nonce,
    Step.SIGNATURE_MODE: validate_signature_mode,
}

STEP_PROMPTS: dict[Step, str] = {
    Step.RECIPIENT_TYPE: "How do you want to identify the recipient?",
    Step.RECIPIENT_COUNT: "How many recipients?",
    Step.TOKEN_ADDRESS: (
        "Enter the token address "
        "(0x0000000000000000000000000000000000000000 for the native coin):"
    ),
    Step.AMOUNT: "Enter the amount:",
    Step.TOTAL_AMOUNT: "Enter the total amount:",
    Step.PRIORITY_FEE: "Enter the priority fee (0 for none):",
    Step.EXECUTOR_ADDRESS: "Enter the executor address, or '-' for the default:",
    Step.PRIORITY: "Choose the priority (low = asynchronous, high = synchronous):",
    Step.ACTION: "Stake or unstake?",
    Step.STAKING_ADDRESS: "Enter the staking contract address:",
    Step.STAKING_NONCE: "Enter the staking nonce:",
    Step.SIGNATURE_MODE: (
        "Sign once (single) or also sign the staking-domain message (dual)?"
    ),
}


def _target_validator(recipient_type: str | None) -> Validator:
    return validate_username if recipient_type == "username" else validate_address


def _target_prompt(recipient_type: str | None) -> str:
    if recipient_type == "username":
        return "Enter the recipient username:"
    return "Enter the recipient address:"


def _first_unset(record: Any, names: tuple[str, ...]) -> None:
    for name in names:
        if getattr(record, name) is None:
            raise MissingParameter(name)


# =========================================================================
# Complete records
# =========================================================================


@dataclass(frozen=True)
class CompleteSinglePayment:
    recipient_type: str
    recipient: str
    token_address: str
    amount: Decimal
    priority_fee: Decimal
    priority: str

    @property
    def to_address(self) -> str | None:
        return self.recipient if self.recipient_type == "address" else None

    @property
    def to_username(self) -> str | None:
        return self.recipient if self.recipient_type == "username" else None


@dataclass(frozen=True)
class CompleteDispersePayment:
    recipients: tuple[Recipient, ...]
    token_address: str
    total_amount: Decimal
    priority_fee: Decimal
    executor_address: str | None
    priority: str


@dataclass(frozen=True)
class CompletePublicStaking:
    action: str
    staking_address: str
    amount: Decimal
    priority_fee: Decimal
    priority: str


@dataclass(frozen=True)
class CompletePresaleStaking:
    action: str
    staking_address: str
    amount: Decimal
    staking_nonce: int
    priority_fee: Decimal
    priority: str
    signature_mode: str

    @property
    def dual(self) -> bool:
        return self.signature_mode == "dual"


CompleteOperation = (
    CompleteSinglePayment
    | CompleteDispersePayment
    | CompletePublicStaking
    | CompletePresaleStaking
)


# =========================================================================
# Drafts
# =========================================================================


class _Draft:
    """Common prompt and choice rendering for drafts."""

    kind: ClassVar[OperationKind]

    def next_step(self) -> Step:
        raise NotImplementedError

    def accept(self, step: Step, raw: Any) -> ValidationResult:
        raise NotImplementedError

    def complete(self) -> CompleteOperation:
        raise NotImplementedError

    def summary_lines(self) -> list[str]:
        raise NotImplementedError

    def _step_prompt(self, step: Step) -> str:
        return STEP_PROMPTS[step]

    def prompt(self) -> str:
        step = self.next_step()
        if step is Step.CONFIRM:
            lines = ["Please review and confirm:"] + self.summary_lines()
            return "\n".join(lines)
        return self._step_prompt(step)

    def choices(self) -> tuple[str, ...]:
        return STEP_CHOICES.get(self.next_step(), ())

    def _check_step(self, step: Step) -> None:
        expected = self.next_step()
        if step is not expected:
            raise ValueError(f"expected step {expected.value}, got {step.value}")


class _SequentialDraft(_Draft):
    """Draft whose steps each fill one attribute of the same name."""

    _steps: ClassVar[tuple[Step, ...]]

    def next_step(self) -> Step:
        for step in self._steps:
            if getattr(self, step.value) is None:
                return step
        return Step.CONFIRM

    def _validator(self, step: Step) -> Validator:
        return STEP_VALIDATORS[step]

    def accept(self, step: Step, raw: Any) -> ValidationResult:
        self._check_step(step)
        result = self._validator(step)(raw)
        if result.ok:
            setattr(self, step.value, result.value)
        return result

    def summary_lines(self) -> list[str]:
        return [f"{f.name}: {getattr(self, f.name)}" for f in fields(self)]  # type: ignore[arg-type]

    def _require_all(self) -> None:
        _first_unset(self, tuple(s.value for s in self._steps))


@dataclass
class SinglePaymentDraft(_SequentialDraft):
    kind: ClassVar[OperationKind] = OperationKind.SINGLE_PAYMENT
    _steps = (
        Step.RECIPIENT_TYPE,
        Step.RECIPIENT,
        Step.TOKEN_ADDRESS,
        Step.AMOUNT,
        Step.PRIORITY_FEE,
        Step.PRIORITY,
    )

    recipient_type: str | None = None
    recipient: str | None = None
    token_address: str | None = None
    amount: Decimal | None = None
    priority_fee: Decimal | None = None
    priority: str | None = None

    def _validator(self, step: Step) -> Validator:
        if step is Step.RECIPIENT:
            return _target_validator(self.recipient_type)
        return super()._validator(step)

    def _step_prompt(self, step: Step) -> str:
        if step is Step.RECIPIENT:
            return _target_prompt(self.recipient_type)
        return super()._step_prompt(step)

    def complete(self) -> CompleteSinglePayment:
        self._require_all()
        return CompleteSinglePayment(
            recipient_type=self.recipient_type,  # type: ignore[arg-type]
            recipient=self.recipient,  # type: ignore[arg-type]
            token_address=self.token_address,  # type: ignore[arg-type]
            amount=self.amount,  # type: ignore[arg-type]
            priority_fee=self.priority_fee,  # type: ignore[arg-type]
            priority=self.priority,  # type: ignore[arg-type]
        )


@dataclass
class PublicStakingDraft(_SequentialDraft):
    kind: ClassVar[OperationKind] = OperationKind.PUBLIC_STAKING
    _steps = (
        Step.ACTION,
        Step.STAKING_ADDRESS,
        Step.AMOUNT,
        Step.PRIORITY_FEE,
        Step.PRIORITY,
    )

    action: str | None = None
    staking_address: str | None = None
    amount: Decimal | None = None
    priority_fee: Decimal | None = None
    priority: str | None = None

    def complete(self) -> CompletePublicStaking:
        self._require_all()
        return CompletePublicStaking(
            action=self.action,  # type: ignore[arg-type]
            staking_address=self.staking_address,  # type: ignore[arg-type]
            amount=self.amount,  # type: ignore[arg-type]
            priority_fee=self.priority_fee,  # type: ignore[arg-type]
            priority=self.priority,  # type: ignore[arg-type]
        )


@dataclass
class PresaleStakingDraft(_SequentialDraft):
    kind: ClassVar[OperationKind] = OperationKind.PRESALE_STAKING
    _steps = (
        Step.ACTION,
        Step.STAKING_ADDRESS,
        Step.AMOUNT,
        Step.STAKING_NONCE,
        Step.PRIORITY_FEE,
        Step.PRIORITY,
        Step.SIGNATURE_MODE,
    )

    action: str | None = None
    staking_address: str | None = None
    amount: Decimal | None = None
    staking_nonce: int | None = None
    priority_fee: Decimal | None = None
    priority: str | None = None
    signature_mode: str | None = None

    def complete(self) -> CompletePresaleStaking:
        self._require_all()
        return CompletePresaleStaking(
            action=self.action,  # type: ignore[arg-type]
            staking_address=self.staking_address,  # type: ignore[arg-type]
            amount=self.amount,  # type: ignore[arg-type]
            staking_nonce=self.staking_nonce,  # type: ignore[arg-type]
            priority_fee=self.priority_fee,  # type: ignore[arg-type]
            priority=self.priority,  # type: ignore[arg-type]
            signature_mode=self.signature_mode,  # type: ignore[arg-type]
        )


@dataclass
class RecipientDraft:
    """One disperse recipient being collected."""

    recipient_type: str | None = None
    target: str | None = None
    amount: Decimal | None = None

    def missing_step(self) -> Step | None:
        if self.recipient_type is None:
            return Step.RECIPIENT_TYPE
        if self.target is None:
            return Step.RECIPIENT_INFO
        if self.amount is None:
            return Step.RECIPIENT_AMOUNT
        return None

    def to_recipient(self) -> Recipient:
        if self.recipient_type == "username":
            return Recipient(amount=self.amount, username=self.target)
        return Recipient(amount=self.amount, address=self.target)


@dataclass
class DispersePaymentDraft(_Draft):
    kind: ClassVar[OperationKind] = OperationKind.DISPERSE_PAYMENT

    recipient_count: int | None = None
    recipients: list[RecipientDraft] = field(default_factory=list)
    token_address: str | None = None
    total_amount: Decimal | None = None
    priority_fee: Decimal | None = None
    executor_address: str | None = None
    executor_chosen: bool = False
    priority: str | None = None

    @property
    def current_index(self) -> int:
        """Zero-based index of the recipient being collected."""
        for index, recipient in enumerate(self.recipients):
            if recipient.missing_step() is not None:
                return index
        return len(self.recipients)

    def recipient_amounts(self) -> list[Decimal]:
        return [r.amount for r in self.recipients if r.amount is not None]

    def next_step(self) -> Step:
        if self.recipient_count is None:
            return Step.RECIPIENT_COUNT
        for recipient in self.recipients:
            missing = recipient.missing_step()
            if missing is not None:
                return missing
        if len(self.recipients) < self.recipient_count:
            return Step.RECIPIENT_TYPE
        if self.token_address is None:
            return Step.TOKEN_ADDRESS
        if self.total_amount is None:
            return Step.TOTAL_AMOUNT
        if self.priority_fee is None:
            return Step.PRIORITY_FEE
        if not self.executor_chosen:
            return Step.EXECUTOR_ADDRESS
        if self.priority is None:
            return Step.PRIORITY
        return Step.CONFIRM

    def accept(self, step: Step, raw: Any) -> ValidationResult:
        """Validate and store ``raw`` for ``step``.

        Raises:
            AmountMismatch: At total_amount, if the total does not match
                the sum of recipient amounts. The draft is unchanged.
        """
        self._check_step(step)

        if step is Step.RECIPIENT_INFO:
            current = self.recipients[self.current_index]
            result = _target_validator(current.recipient_type)(raw)
        else:
            result = STEP_VALIDATORS[step](raw)
        if not result.ok:
            return result

        if step is Step.RECIPIENT_TYPE:
            self.recipients.append(RecipientDraft(recipient_type=result.value))
        elif step is Step.RECIPIENT_INFO:
            self.recipients[self.current_index].target = result.value
        elif step is Step.RECIPIENT_AMOUNT:
            self.recipients[self.current_index].amount = result.value
        elif step is Step.TOTAL_AMOUNT:
            amounts = self.recipient_amounts()
            if not amounts_match(result.value, amounts):
                raise AmountMismatch(
                    f"Total amount {result.value} does not match the sum of "
                    f"recipient amounts ({sum_amounts(amounts)})."
                )
            # The signed total is the exact recipient sum.
            self.total_amount = sum_amounts(amounts)
        elif step is Step.EXECUTOR_ADDRESS:
            self.executor_address = result.value
            self.executor_chosen = True
        else:
            setattr(self, step.value, result.value)
        return result

    def _step_prompt(self, step: Step) -> str:
        if step in (Step.RECIPIENT_TYPE, Step.RECIPIENT_INFO, Step.RECIPIENT_AMOUNT):
            index = self.current_index
            label = f"Recipient {index + 1} of {self.recipient_count}"
            if step is Step.RECIPIENT_TYPE:
                return f"{label}: {STEP_PROMPTS[step]}"
            if step is Step.RECIPIENT_INFO:
                return f"{label}: {_target_prompt(self.recipients[index].recipient_type)}"
            return f"{label}: Enter the amount:"
        if step is Step.TOTAL_AMOUNT:
            total = sum_amounts(self.recipient_amounts())
            return f"Enter the total amount (recipient amounts sum to {total}):"
        return STEP_PROMPTS[step]

    def summary_lines(self) -> list[str]:
        lines = [f"recipient_count: {self.recipient_count}"]
        for index, recipient in enumerate(self.recipients, start=1):
            lines.append(f"recipient {index}: {recipient.target} ({recipient.amount})")
        lines += [
            f"token_address: {self.token_address}",
            f"total_amount: {self.total_amount}",
            f"priority_fee: {self.priority_fee}",
            f"executor_address: {self.executor_address or 'default'}",
            f"priority: {self.priority}",
        ]
        return lines

    def complete(self) -> CompleteDispersePayment:
        _first_unset(self, ("recipient_count",))
        if len(self.recipients) < self.recipient_count:  # type: ignore[operator]
            raise MissingParameter("recipients")
        for index, recipient in enumerate(self.recipients):
            if recipient.missing_step() is not None:
                raise MissingParameter(f"recipients[{index}]")
        _first_unset(self, ("token_address", "total_amount", "priority_fee"))
        if not self.executor_chosen:
            raise MissingParameter("executor_address")
        _first_unset(self, ("priority",))
        return CompleteDispersePayment(
            recipients=tuple(r.to_recipient() for r in self.recipients),
            token_address=self.token_address,  # type: ignore[arg-type]
            total_amount=self.total_amount,  # type: ignore[arg-type]
            priority_fee=self.priority_fee,  # type: ignore[arg-type]
            executor_address=self.executor_address,
            priority=self.priority,  # type: ignore[arg-type]
        )


Draft = SinglePaymentDraft | DispersePaymentDraft | PublicStakingDraft | PresaleStakingDraft

DRAFT_TYPES: dict[OperationKind, type[_Draft]] = {
    OperationKind.SINGLE_PAYMENT: SinglePaymentDraft,
    OperationKind.DISPERSE_PAYMENT: DispersePaymentDraft,
    OperationKind.PUBLIC_STAKING: PublicStakingDraft,
    OperationKind.PRESALE_STAKING: PresaleStakingDraft,
}


@dataclass
class Operation:
    """An in-flight operation held by a session."""

    kind: OperationKind
    draft: Draft
    started_at: float

    @classmethod
    def start(cls, kind: OperationKind, now: float) -> Operation:
        return cls(kind=kind, draft=DRAFT_TYPES[kind](), started_at=now)  # type: ignore[arg-type]

    @property
    def step(self) -> Step:
        return self.draft.next_step()

    @property
    def awaits_choice(self) -> bool:
        return self.step in BUTTON_STEPS
