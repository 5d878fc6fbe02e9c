# Directory: controllers
# Filename: checkin_fsm.py
#!/usr/bin/env python3

import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from functools import partial
from typing import Callable, Dict, List, Optional, Tuple, Union

from transitions import EventData, Machine

from controllers.acquisition_channels import AcquisitionChannel, InputMode
from controllers.operator_context import OperatorContext
from controllers.verification_dispatcher import (
    GENERIC_FAILURE_MESSAGE,
    VerificationDispatcher,
    VerificationOutcome,
)
from utils.checkin_errors import CameraPermissionError, InvalidFormatError, PreconditionError, ResourceRaceError
from utils.code_classifier import (
    CHANNEL_MANUAL,
    ClassifiedCode,
    CodeKind,
    RawAcquisition,
    classify,
    inspect_optical_payload,
)
from utils.scheduler import CallbackScheduler

EMPTY_MANUAL_CODE_MESSAGE = "Please enter a code."


class CallableCondition:
    """
    A wrapper that gives an inline condition a readable __name__ for logs.
    """
    def __init__(self, func: Callable[..., bool], name: str):
        self.func = func
        self.__name__ = name

    def __call__(self, *args, **kwargs) -> bool:
        return self.func(*args, **kwargs)

    def __repr__(self) -> str:
        return f"<CallableCondition: {self.__name__}>"


## --- FSM Class Definition ---
class CheckInCoordinator:
    """
    The acquisition coordinator: a state machine that arbitrates the input
    channels, owns the single in-flight verification and walks each scan
    through IDLE -> ACQUIRING -> CLASSIFYING -> VERIFYING -> RESULT.

    All methods must be called on the scheduler's thread. Work that finishes
    elsewhere (verification requests) comes back as tagged events through the
    scheduler and is dropped if the session has moved on.

    Attributes:
        STATES: All states the machine can be in.
        mode: The selected InputMode.
        classified_code: The code being (or last) verified.
        last_result: The VerificationOutcome of the current scan, if any.
        error_message: The latest recoverable, operator-facing error.
        acquisition_error: Set when the camera could not be started; retry() clears it.
        attendance_result: Outcome of mark_attended() for the current code.
        ticket_details: The decoded QR ticket document, when the token carries one.
    """

    STATES: List[str] = ['IDLE', 'ACQUIRING', 'CLASSIFYING', 'VERIFYING', 'RESULT']

    state: str
    machine: Machine

    def __init__(self,
                 scheduler: CallbackScheduler,
                 channels: Dict[InputMode, AcquisitionChannel],
                 dispatcher: VerificationDispatcher,
                 operator: OperatorContext,
                 executor: Optional[Executor] = None,
                 mode: Union[InputMode, str] = InputMode.OPTICAL_QR,
                 on_reauthenticate: Optional[Callable[[str], None]] = None,
                 on_state_change: Optional[Callable[['CheckInCoordinator'], None]] = None,
                 logger_instance: Optional[logging.Logger] = None):
        self.logger = logger_instance if logger_instance else logging.getLogger("CheckIn.Coordinator")
        self.scheduler = scheduler
        self.channels = channels
        self.dispatcher = dispatcher
        self.operator = operator
        self._owns_executor = executor is None
        self.executor = executor if executor is not None else ThreadPoolExecutor(max_workers=1, thread_name_prefix="checkin-verify")
        self.on_reauthenticate = on_reauthenticate
        self.on_state_change = on_state_change

        self.mode: InputMode = InputMode(mode)
        self.active_channel: Optional[AcquisitionChannel] = None
        self.page_hidden = False

        self.classified_code: Optional[ClassifiedCode] = None
        self.ticket_details: Optional[dict] = None
        self.last_result: Optional[VerificationOutcome] = None
        self.attendance_result: Optional[VerificationOutcome] = None
        self.error_message: Optional[str] = None
        self.acquisition_error: Optional[str] = None

        self._pending: Optional[Tuple[RawAcquisition, Optional[ClassifiedCode]]] = None
        self._attempt_id = 0
        self.verification_count = 0

        transitions = [
            {'trigger': 'begin_acquisition', 'source': 'IDLE', 'dest': 'ACQUIRING'},
            {'trigger': 'acquisition_failed', 'source': ['ACQUIRING', 'RESULT'], 'dest': 'RESULT', 'before': '_store_acquisition_failure'},

            # --- Detection ---
            {'trigger': 'code_detected', 'source': 'ACQUIRING', 'dest': 'CLASSIFYING'},
            {'trigger': 'code_detected', 'source': 'RESULT', 'dest': 'CLASSIFYING',
             'conditions': [CallableCondition(lambda _: self.accepting_input, "previous scan failed")]},

            # --- Classification ---
            {'trigger': 'classification_passed', 'source': 'CLASSIFYING', 'dest': 'VERIFYING', 'before': '_clear_result'},
            {'trigger': 'classification_rejected', 'source': 'CLASSIFYING', 'dest': 'RESULT',
             'conditions': [CallableCondition(lambda _: self.last_result is not None, "result on display")]},
            {'trigger': 'classification_rejected', 'source': 'CLASSIFYING', 'dest': 'ACQUIRING'},

            # --- Verification ---
            {'trigger': 'verification_completed', 'source': 'VERIFYING', 'dest': 'RESULT', 'before': '_store_outcome',
             'conditions': [CallableCondition(lambda e: self._is_current_attempt(e.kwargs.get('attempt_id')), "current attempt")]},

            # --- Operator actions ---
            {'trigger': 'retry_acquisition', 'source': 'RESULT', 'dest': 'ACQUIRING', 'before': '_clear_session',
             'conditions': [CallableCondition(lambda _: self.acquisition_error is not None, "camera failed")]},
            {'trigger': 'reset_scan', 'source': 'RESULT', 'dest': 'IDLE', 'before': '_clear_session', 'after': '_restart_acquisition'},
            {'trigger': 'change_mode', 'source': '*', 'dest': 'ACQUIRING', 'before': '_switch_mode'},

            # --- Exits ---
            {'trigger': 'require_reauthentication', 'source': '*', 'dest': 'IDLE', 'before': '_teardown_channel',
             'after': '_announce_reauthentication'},
            {'trigger': 'halt', 'source': '*', 'dest': 'IDLE', 'before': '_teardown_channel'},
        ]

        self.machine = Machine(
            model=self,
            states=CheckInCoordinator.STATES,
            transitions=transitions,
            initial='IDLE',
            send_event=True,
            queued=True,
            auto_transitions=False,
            after_state_change='_log_state_change_details',
        )
        self.transition_config = transitions

        # --- Triggers bound by the Machine --- #
        self.begin_acquisition: Callable
        self.acquisition_failed: Callable
        self.code_detected: Callable
        self.classification_passed: Callable
        self.classification_rejected: Callable
        self.verification_completed: Callable
        self.retry_acquisition: Callable
        self.reset_scan: Callable
        self.change_mode: Callable
        self.require_reauthentication: Callable
        self.halt: Callable

    def _log_state_change_details(self, event_data: EventData) -> None:
        source = event_data.transition.source if event_data.transition else None
        self.logger.info(f"State changed: {source} -> {self.state} (Event: {event_data.event.name})")
        if self.on_state_change is not None:
            self.on_state_change(self)

    # --- Render surface --- #

    @property
    def phase(self) -> str:
        return self.state

    @property
    def accepting_input(self) -> bool:
        """Input is taken while acquiring, and again once a failed result is on display."""
        if self.state == 'ACQUIRING':
            return True
        return self.state == 'RESULT' and self.last_result is not None and not self.last_result.success

    # --- Public actions --- #

    def start(self) -> bool:
        if self.state != 'IDLE':
            self.logger.debug(f"start() ignored in state {self.state}.")
            return False
        return self.begin_acquisition()

    def select_mode(self, mode: Union[InputMode, str]) -> bool:
        mode = InputMode(mode)
        if mode is self.mode and self.state == 'ACQUIRING' and self.active_channel is not None:
            return False
        self.logger.info(f"Input mode selected: '{mode.value}'.")
        return self.change_mode(mode=mode)

    def submit_acquisition(self, acquisition: RawAcquisition, classified: Optional[ClassifiedCode] = None) -> bool:
        """
        Feeds a detected code into the pipeline.

        Returns:
            False if the code was dropped because another scan is being
            classified, verified, or a successful result is on display.
        """
        if not self.accepting_input:
            self.logger.info(f"Dropped '{acquisition.channel}' scan received in state {self.state}.")
            return False
        self._pending = (acquisition, classified)
        return self.code_detected()

    def submit_manual_code(self, text: Optional[str]) -> bool:
        trimmed = str(text).strip() if text is not None else ""
        if not trimmed:
            self.error_message = EMPTY_MANUAL_CODE_MESSAGE
            self._notify()
            return False
        return self.submit_acquisition(RawAcquisition(trimmed, CHANNEL_MANUAL))

    def retry(self) -> bool:
        if self.state != 'RESULT' or self.acquisition_error is None:
            self.logger.debug(f"retry() ignored in state {self.state}.")
            return False
        return self.retry_acquisition()

    def scan_another(self) -> bool:
        if self.state != 'RESULT':
            self.logger.debug(f"scan_another() ignored in state {self.state}.")
            return False
        return self.reset_scan()

    def mark_attended(self) -> bool:
        """Confirms attendance for a successfully verified code (runs in the background)."""
        if self.state != 'RESULT' or not self.last_result or not self.last_result.success or self.classified_code is None:
            self.logger.warning("Cannot mark attendance without a successful verification on display.")
            return False
        code = self.classified_code
        future = self.executor.submit(self.dispatcher.confirm_attendance, code, self.operator)
        future.add_done_callback(partial(self._post_to_scheduler, self._deliver_attendance, self._attempt_id, code))
        return True

    def set_page_hidden(self, hidden: bool) -> None:
        """Hiding the terminal releases the active channel at once; showing it re-arms input."""
        self.page_hidden = hidden
        if hidden:
            self.logger.info("Terminal hidden; releasing input channel.")
            self._teardown_channel()
        elif self.accepting_input and self.acquisition_error is None:
            self.logger.info("Terminal visible; re-arming input channel.")
            self._activate_channel()

    def shutdown(self) -> None:
        self.halt()
        for channel in self.channels.values():
            channel.deactivate()
        if self._owns_executor:
            self.executor.shutdown(wait=False)
        self.logger.info("Coordinator shut down.")

    # --- Channel management --- #

    def _teardown_channel(self, event_data: Optional[EventData] = None) -> None:
        channel, self.active_channel = self.active_channel, None
        if channel is not None:
            channel.deactivate()

    def _activate_channel(self, fresh: bool = True) -> None:
        channel = self.channels.get(self.mode)
        if channel is None:
            self.logger.error(f"No channel registered for mode '{self.mode.value}'.")
            self.acquisition_failed(message=f"Input mode '{self.mode.value}' is not available.")
            return

        if self.active_channel is not None and self.active_channel is not channel:
            self._teardown_channel()

        if channel.is_active:
            self.active_channel = channel
            channel.resume(fresh=fresh)
            return

        try:
            channel.activate(self._on_channel_code, self._on_channel_error)
        except CameraPermissionError as e:
            self.logger.error(f"Camera could not be started: {e}")
            self.acquisition_failed(message=e.hint)
            return
        except ResourceRaceError as e:
            self.logger.error(f"Camera could not be attached: {e}")
            self.acquisition_failed(message=str(e))
            return
        self.active_channel = channel

    def _on_channel_code(self, acquisition: RawAcquisition, classified: Optional[ClassifiedCode]) -> bool:
        return self.submit_acquisition(acquisition, classified)

    def _on_channel_error(self, acquisition: RawAcquisition, error: InvalidFormatError) -> None:
        if not self.accepting_input:
            return
        self.error_message = str(error)
        self._notify()

    def _notify(self) -> None:
        if self.on_state_change is not None:
            self.on_state_change(self)

    # --- Transition callbacks --- #

    def _switch_mode(self, event_data: EventData) -> None:
        self._teardown_channel()
        self.mode = InputMode(event_data.kwargs.get('mode', self.mode))
        self._clear_session()

    def _clear_result(self, event_data: Optional[EventData] = None) -> None:
        self.last_result = None
        self.attendance_result = None
        self.acquisition_error = None

    def _clear_session(self, event_data: Optional[EventData] = None) -> None:
        self._clear_result()
        self.classified_code = None
        self.ticket_details = None
        self.error_message = None
        self._pending = None

    def _restart_acquisition(self, event_data: EventData) -> None:
        self.begin_acquisition()

    def _store_acquisition_failure(self, event_data: EventData) -> None:
        message = event_data.kwargs.get('message') or "Camera access failed."
        self._teardown_channel()
        self.acquisition_error = message
        self.last_result = VerificationOutcome(False, message)

    def _store_outcome(self, event_data: EventData) -> None:
        self.last_result = event_data.kwargs['outcome']
        self.verification_count += 1

    def _is_current_attempt(self, attempt_id: Optional[int]) -> bool:
        return self.state == 'VERIFYING' and attempt_id == self._attempt_id

    # --- State entry callbacks --- #

    def on_enter_ACQUIRING(self, event_data: EventData) -> None:
        if self.page_hidden:
            self.logger.info("Terminal hidden; input channel activation deferred.")
            return
        # A rejected code that is still in view is not read again.
        self._activate_channel(fresh=event_data.event.name != 'classification_rejected')

    def on_enter_CLASSIFYING(self, event_data: EventData) -> None:
        acquisition, classified = self._pending
        self._pending = None
        if classified is None:
            try:
                classified = classify(acquisition.raw, channel_hint=acquisition.channel)
            except InvalidFormatError as e:
                self.logger.warning(f"Rejected '{acquisition.channel}' scan: {e}")
                self.error_message = str(e)
                self.classification_rejected()
                return

        self.error_message = None
        self.classified_code = classified
        self.ticket_details = None
        if classified.kind is CodeKind.OPTICAL_PAYLOAD:
            self.ticket_details = inspect_optical_payload(classified.normalized_code)
            if self.ticket_details and self.ticket_details.get("uniqueHash"):
                self.logger.debug(f"QR ticket hash: {self.ticket_details['uniqueHash']}")
        self.logger.info(f"Classified '{acquisition.channel}' scan as {classified.kind.value}.")
        self.classification_passed()

    def on_enter_VERIFYING(self, event_data: EventData) -> None:
        try:
            self.operator.require()
        except PreconditionError as e:
            self.logger.error(f"Verification skipped: {e}")
            self._exit_for_reauthentication(str(e))
            return

        self._attempt_id += 1
        attempt_id = self._attempt_id
        code = self.classified_code
        self.logger.info(f"Dispatching verification attempt #{attempt_id}.")
        future = self.executor.submit(self.dispatcher.verify, code, self.operator)
        future.add_done_callback(partial(self._post_to_scheduler, self._deliver_verification, attempt_id, code))

    def on_enter_RESULT(self, event_data: EventData) -> None:
        if self.acquisition_error is not None:
            return
        if self.last_result is not None and self.last_result.success:
            if self.mode.is_optical:
                self._teardown_channel()
            return
        if self.active_channel is not None:
            self.active_channel.resume()

    # --- Async completions --- #

    def _post_to_scheduler(self, handler: Callable, attempt_id: int, code: ClassifiedCode, future: Future) -> None:
        # Runs on the executor thread.
        self.scheduler.call_soon_threadsafe(handler, attempt_id, code, future)

    def _exit_for_reauthentication(self, message: str) -> None:
        self.error_message = message
        self.require_reauthentication(message=message)

    def _announce_reauthentication(self, event_data: EventData) -> None:
        if self.on_reauthenticate is not None:
            self.on_reauthenticate(event_data.kwargs.get('message') or self.error_message)

    def _deliver_verification(self, attempt_id: int, code: ClassifiedCode, future: Future) -> None:
        try:
            outcome = future.result()
        except PreconditionError as e:
            if self._is_current_attempt(attempt_id):
                self._exit_for_reauthentication(str(e))
            return
        except Exception as e:
            self.logger.error(f"Verification attempt #{attempt_id} raised: {e}", exc_info=True)
            outcome = VerificationOutcome(False, GENERIC_FAILURE_MESSAGE)

        if not self._is_current_attempt(attempt_id) or code != self.classified_code:
            self.logger.info(f"Discarding stale result of verification attempt #{attempt_id}.")
            return
        self.verification_completed(attempt_id=attempt_id, outcome=outcome)

    def _deliver_attendance(self, attempt_id: int, code: ClassifiedCode, future: Future) -> None:
        try:
            outcome = future.result()
        except PreconditionError as e:
            self._exit_for_reauthentication(str(e))
            return
        except Exception as e:
            self.logger.error(f"Attendance confirmation raised: {e}", exc_info=True)
            outcome = VerificationOutcome(False, GENERIC_FAILURE_MESSAGE)

        if self.state != 'RESULT' or attempt_id != self._attempt_id or code != self.classified_code:
            self.logger.info("Discarding stale attendance confirmation.")
            return
        self.attendance_result = outcome
        self._notify()
