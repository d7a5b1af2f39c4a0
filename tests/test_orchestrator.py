"""Tests para la máquina de estados de la sesión."""

import asyncio
import json

import pytest

from conftest import FakeService, project_json, step_json, streamlit_execution
from project_builder.core.orchestrator import SessionOrchestrator
from project_builder.core.persistence import SessionPersistence
from project_builder.core.state import SessionPhase
from project_builder.service.client import ServiceError

HTML_STARTER = "<html><body><h1>Todo</h1></body></html>"


def run(coro):
    return asyncio.run(coro)


async def started(
    service: FakeService,
    level: str = "beginner",
    project_type: str = "html+css+js",
    **kwargs,
) -> SessionOrchestrator:
    orch = SessionOrchestrator(client=service, advance_delay=0, **kwargs)
    result = await orch.start(project_type, level, "todo list")
    assert result.ok, result.message
    return orch


def answer_all(orch: SessionOrchestrator, wrong: set[str] = frozenset()) -> None:
    for q in orch.quiz.questions:
        option = q.options[1] if q.id in wrong else q.correct_answer
        assert orch.answer(q.id, option).ok


class TestStart:
    """Tests de creación de sesión."""

    def test_start_populates_session(self, service: FakeService) -> None:
        """Test sesión creada con el primer paso."""
        orch = run(started(service))

        session = orch.session
        assert session.session_id == "s-1"
        assert session.project_title == "Todo App"
        assert session.total_steps == 3
        assert session.current_step_index == 0
        assert session.phase is SessionPhase.IN_STEP
        assert session.current_step.title == "Step 1: Setup"
        assert service.calls[0][1]["project_idea"] == "todo list"

    def test_start_failure_leaves_no_session(self, service: FakeService) -> None:
        """Test error de transporte al iniciar."""
        service.start_error = ServiceError("caído")
        orch = SessionOrchestrator(client=service)

        result = run(orch.start("html+css+js", "beginner"))

        assert not result.ok
        assert orch.session is None
        assert orch.phase is SessionPhase.AWAITING_STEP

    def test_start_unparseable_payload(self, service: FakeService) -> None:
        """Test plan inicial ilegible."""
        service.start_payload = "lo siento, no puedo"
        orch = SessionOrchestrator(client=service)

        result = run(orch.start("html+css+js", "beginner"))

        assert not result.ok
        assert orch.session is None

    def test_start_rejects_unknown_selection(self, service: FakeService) -> None:
        """Test validación local de tipo y nivel."""
        orch = SessionOrchestrator(client=service)

        result = run(orch.start("rust+wasm", "beginner"))

        assert not result.ok
        assert service.calls == []

    def test_start_without_steps_awaits_step(self, service: FakeService) -> None:
        """Test plan sin pasos: AWAITING_STEP hasta pedir uno."""
        service.start_payload = json.dumps({"project_title": "X", "total_steps": 2, "steps": []})
        service.next_steps = [step_json("Step 1: Inicio")]

        async def scenario():
            orch = await started(service)
            assert orch.phase is SessionPhase.AWAITING_STEP
            result = await orch.next_step()
            return orch, result

        orch, result = run(scenario())
        assert result.ok
        assert orch.phase is SessionPhase.IN_STEP
        assert orch.session.current_step_index == 0
        assert len(orch.session.steps) == 1


class TestStarterCode:
    """Tests de precarga del editor."""

    def test_beginner_first_step_prefills_html(self, service: FakeService) -> None:
        """Test principiante, paso 0: editor HTML precargado."""
        service.start_payload = project_json(first_step_code=HTML_STARTER)

        orch = run(started(service))

        assert orch.editor.buffers["html"] == HTML_STARTER
        assert orch.editor.current_language == "html"

    def test_later_step_never_prefills(self, service: FakeService) -> None:
        """Test paso 1 con código sugerido: editor vacío."""
        service.start_payload = project_json(first_step_code=HTML_STARTER)
        service.next_steps = [step_json("Step 2: Estilos", code="<html><p>x</p></html>")]

        async def scenario():
            orch = await started(service)
            await orch.next_step()
            return orch

        orch = run(scenario())
        assert orch.session.current_step_index == 1
        assert orch.session.current_step.suggested_code
        assert all(code == "" for code in orch.editor.buffers.values())

    @pytest.mark.parametrize("level", ["intermediate", "expert"])
    def test_non_beginner_never_prefills(self, service: FakeService, level: str) -> None:
        """Test niveles altos empiezan vacíos."""
        service.start_payload = project_json(first_step_code=HTML_STARTER)

        orch = run(started(service, level=level))

        assert orch.editor.buffers["html"] == ""

    def test_streamlit_starter_goes_to_python(self, service: FakeService) -> None:
        """Test stack Python: buffer python."""
        service.start_payload = project_json(first_step_code="import streamlit as st")

        orch = run(started(service, project_type="python+streamlit"))

        assert orch.editor.current_language == "python"
        assert orch.editor.current_code() == "import streamlit as st"


class TestNextStep:
    """Tests de avance incondicional."""

    def test_sends_code_and_advances_by_one(self, service: FakeService) -> None:
        """Test índice +1 por avance y código enviado."""
        service.next_steps = [step_json("Step 2: A"), step_json("Step 3: B")]

        async def scenario():
            orch = await started(service)
            orch.set_code("<p>hola</p>", "html")
            indexes = [orch.session.current_step_index]
            for _ in range(2):
                result = await orch.next_step()
                assert result.ok
                indexes.append(orch.session.current_step_index)
            return indexes

        assert run(scenario()) == [0, 1, 2]
        _, kwargs = service.calls[1]
        assert kwargs["user_code"] == "<p>hola</p>"
        assert kwargs["current_step"] == 0
        assert kwargs["session_id"] == "s-1"

    @pytest.mark.parametrize(
        "failure",
        [ServiceError("timeout"), '{"title": "sin descripción"}', "texto sin json"],
    )
    def test_failure_leaves_state_untouched(self, service: FakeService, failure) -> None:
        """Test fallo de NextStep: pasos, índice y completed intactos."""
        service.next_steps = [failure]

        async def scenario():
            orch = await started(service)
            before = json.dumps(orch.session.to_dict(), sort_keys=True)
            result = await orch.next_step()
            after = json.dumps(orch.session.to_dict(), sort_keys=True)
            return orch, result, before, after

        orch, result, before, after = run(scenario())
        assert not result.ok
        assert result.message
        assert before == after
        assert orch.session.phase is SessionPhase.IN_STEP
        assert orch.session.busy is False

    def test_completion_is_terminal(self, service: FakeService) -> None:
        """Test señal de fin: nada más se acepta salvo preguntas y reset."""
        service.next_steps = [json.dumps({"completed": True, "message": "¡Terminado!"})]

        async def scenario():
            orch = await started(service)
            done = await orch.next_step()
            calls_after_completion = len(service.calls)
            rejected = [
                await orch.next_step(),
                await orch.complete_step(),
                await orch.submit_quiz(),
                await orch.run_code("html"),
            ]
            return orch, done, rejected, calls_after_completion

        orch, done, rejected, calls_after_completion = run(scenario())
        assert done.ok
        assert done.message == "¡Terminado!"
        assert orch.session.completed
        assert orch.phase is SessionPhase.COMPLETED
        assert all(not r.ok for r in rejected)
        assert len(service.calls) == calls_after_completion

    def test_project_completed_signal(self, service: FakeService) -> None:
        """Test fin de proyecto con la clave project_completed."""
        service.next_steps = [json.dumps({"project_completed": True, "message": "¡Proyecto terminado!"})]

        async def scenario():
            orch = await started(service)
            return orch, await orch.next_step()

        orch, result = run(scenario())
        assert result.ok
        assert result.message == "¡Proyecto terminado!"
        assert orch.phase is SessionPhase.COMPLETED
        assert len(orch.session.steps) == 1

    def test_last_step_requires_quiz(self, service: FakeService) -> None:
        """Test en el último paso anunciado no se pide otro paso."""
        service.start_payload = project_json(total_steps=1)

        async def scenario():
            orch = await started(service)
            return orch, await orch.next_step()

        orch, result = run(scenario())
        assert not result.ok
        assert "quiz" in result.message
        assert service.names() == ["start_project"]
        assert orch.phase is SessionPhase.IN_STEP
        assert orch.session.current_step_index == 0

    def test_last_step_completes_through_quiz(self, service: FakeService) -> None:
        """Test aprobar el quiz del último paso termina el proyecto."""
        service.start_payload = project_json(total_steps=1)
        service.gradings = [{"correct": True, "score": 100}]
        service.next_steps = [json.dumps({"project_completed": True, "message": "Fin"})]

        async def scenario():
            orch = await started(service)
            await orch.complete_step()
            answer_all(orch)
            return orch, await orch.submit_quiz()

        orch, result = run(scenario())
        assert result.ok
        assert orch.phase is SessionPhase.COMPLETED
        assert orch.session.current_step_index == 0

    def test_busy_guard_rejects_overlapping_action(self, service: FakeService) -> None:
        """Test acciones solapadas se rechazan mientras hay llamada en vuelo."""
        service.next_steps = [step_json("Step 2: A")]
        seen = []

        async def scenario():
            orch = await started(service)

            async def overlap():
                seen.append(orch.session.busy)
                seen.append(await orch.complete_step())

            service.hooks["next_step"] = overlap
            result = await orch.next_step()
            return orch, result

        orch, result = run(scenario())
        assert result.ok
        assert seen[0] is True
        assert not seen[1].ok
        assert "get_step_questions" not in service.names()
        assert orch.session.busy is False


class TestQuiz:
    """Tests del quiz de verificación."""

    def test_partial_answers_rejected_locally(self, service: FakeService) -> None:
        """Test 3 preguntas, 2 respondidas: 1 pendiente, sin corrección."""
        async def scenario():
            orch = await started(service)
            await orch.complete_step()
            orch.answer("q1", "Bloque")
            orch.answer("q2", "Estilos")
            return orch, await orch.submit_quiz()

        orch, result = run(scenario())
        assert not result.ok
        assert result.unanswered == 1
        assert "1 pregunta" in result.message
        assert "verify_step_completion" not in service.names()
        assert orch.phase is SessionPhase.QUIZ_PENDING

    def test_failed_grading_keeps_answers_then_success_advances(self, service: FakeService) -> None:
        """Test corrección fallida conserva respuestas; la segunda avanza."""
        service.gradings = [
            {"correct": False, "score": 66, "question_feedback": {"q2": "Repasa CSS"}},
            {"correct": True, "score": 100, "feedback": "¡Bien hecho!"},
        ]
        service.next_steps = [step_json("Step 2: Lista")]

        async def scenario():
            orch = await started(service)
            await orch.complete_step()
            answer_all(orch, wrong={"q2"})
            first = await orch.submit_quiz()
            snapshot = (
                dict(orch.quiz.answers),
                orch.quiz.feedback_for("q2"),
                orch.session.current_step_index,
                orch.phase,
            )
            orch.answer("q2", "Estilos")
            second = await orch.submit_quiz()
            return orch, first, snapshot, second

        orch, first, snapshot, second = run(scenario())
        answers, feedback, index, phase = snapshot

        assert first.ok and not first.grading.correct
        assert len(answers) == 3
        assert feedback == "Repasa CSS"
        assert index == 0
        assert phase is SessionPhase.QUIZ_PENDING

        assert second.ok and second.grading.correct
        assert orch.session.current_step_index == 1
        assert orch.quiz is None
        assert orch.phase is SessionPhase.IN_STEP
        assert orch.session.steps[0].feedback == "¡Bien hecho!"
        assert service.names().count("get_step_questions") == 1
        assert service.calls[-2][1]["user_answers"][1] == {
            "question_id": "q2", "answer": "Estilos", "correct_answer": "Estilos",
        }

    def test_grading_transport_error_returns_to_pending(self, service: FakeService) -> None:
        """Test error de corrección: se puede reintentar."""
        service.gradings = [ServiceError("502")]

        async def scenario():
            orch = await started(service)
            await orch.complete_step()
            answer_all(orch)
            return orch, await orch.submit_quiz()

        orch, result = run(scenario())
        assert not result.ok
        assert orch.phase is SessionPhase.QUIZ_PENDING
        assert len(orch.quiz.answers) == 3
        assert orch.session.current_step_index == 0

    @pytest.mark.parametrize(
        "questions",
        [
            [],
            ServiceError("caído"),
            {"questions": "no"},
            [{"question_id": "q1", "question_text": "X?", "options": 4}],
        ],
    )
    def test_fetch_failure_stays_in_step(self, service: FakeService, questions) -> None:
        """Test sin preguntas: vuelve a IN_STEP."""
        service.questions = questions

        async def scenario():
            orch = await started(service)
            return orch, await orch.complete_step()

        orch, result = run(scenario())
        assert not result.ok
        assert orch.phase is SessionPhase.IN_STEP
        assert orch.quiz is None

    def test_passed_quiz_retries_advance_without_regrading(self, service: FakeService) -> None:
        """Test quiz aprobado pero NextStep falla: reintento sin recorregir."""
        service.gradings = [{"correct": True, "score": 100}]
        service.next_steps = [ServiceError("timeout"), step_json("Step 2: A")]

        async def scenario():
            orch = await started(service)
            await orch.complete_step()
            answer_all(orch)
            first = await orch.submit_quiz()
            state = (orch.phase, orch.quiz.passed, orch.session.current_step_index)
            second = await orch.submit_quiz()
            return orch, first, state, second

        orch, first, state, second = run(scenario())
        assert not first.ok
        assert state == (SessionPhase.QUIZ_PENDING, True, 0)
        assert second.ok
        assert orch.session.current_step_index == 1
        assert service.names().count("verify_step_completion") == 1
        assert orch.session.steps[0].feedback == "Quiz superado (100%)."

    def test_advance_waits_display_delay(self, service: FakeService) -> None:
        """Test pausa antes de avanzar tras aprobar."""
        service.gradings = [{"correct": True, "score": 90}]
        service.next_steps = [step_json("Step 2: A")]
        delays = []

        async def fake_sleep(seconds: float) -> None:
            delays.append(seconds)

        async def scenario():
            orch = SessionOrchestrator(client=service, advance_delay=2.0, sleep=fake_sleep)
            await orch.start("html+css+js", "beginner")
            await orch.complete_step()
            answer_all(orch)
            return await orch.submit_quiz()

        assert run(scenario()).ok
        assert delays == [2.0]

    def test_service_shaped_questions(self, service: FakeService) -> None:
        """Test preguntas con question_id y question_text abren el quiz."""
        async def scenario():
            orch = await started(service)
            return orch, await orch.complete_step()

        orch, result = run(scenario())
        assert result.ok
        assert orch.phase is SessionPhase.QUIZ_PENDING
        assert orch.quiz.questions[0].text == "¿Qué hace <div>?"
        assert service.calls[-1] == ("get_step_questions", {"session_id": "s-1", "step_number": 0})

    def test_non_boolean_correct_keeps_quiz_pending(self, service: FakeService) -> None:
        """Test correct como texto no cuenta como aprobado."""
        service.gradings = [{"correct": "false", "score": 0}]

        async def scenario():
            orch = await started(service)
            await orch.complete_step()
            answer_all(orch)
            return orch, await orch.submit_quiz()

        orch, result = run(scenario())
        assert not result.ok
        assert orch.phase is SessionPhase.QUIZ_PENDING
        assert orch.session.current_step_index == 0
        assert "next_step" not in service.names()

    def test_cancel_discards_quiz(self, service: FakeService) -> None:
        """Test cancelar vuelve al paso y descarta respuestas."""
        async def scenario():
            orch = await started(service)
            await orch.complete_step()
            orch.answer("q1", "Bloque")
            return orch, orch.cancel_quiz()

        orch, result = run(scenario())
        assert result.ok
        assert orch.quiz is None
        assert orch.phase is SessionPhase.IN_STEP

    def test_answer_outside_quiz_rejected(self, service: FakeService) -> None:
        """Test responder sin quiz activo."""
        orch = run(started(service))
        assert not orch.answer("q1", "Bloque").ok


class TestResources:
    """Tests del ciclo de vida del preview."""

    def test_run_releases_previous_before_acquiring(self, service: FakeService) -> None:
        """Test como máximo un proceso vivo."""
        service.executions = [streamlit_execution("exec-1"), streamlit_execution("exec-2")]

        async def scenario():
            orch = await started(service, project_type="python+streamlit")
            orch.set_code("import streamlit as st", "python")
            first = await orch.run_code()
            active_first = orch.session.active_resource_id
            second = await orch.run_code()
            return orch, first, active_first, second

        orch, first, active_first, second = run(scenario())
        assert first.ok and second.ok
        assert active_first == "exec-1"
        assert orch.session.active_resource_id == "exec-2"
        assert service.names()[1:] == ["execute", "stop_execution", "execute"]
        assert service.calls[2][1] == {"execution_id": "exec-1"}

    def test_reset_releases_exactly_once_even_if_stop_fails(self, service: FakeService) -> None:
        """Test reset con fallo al detener: handle vacío igualmente."""
        service.executions = [streamlit_execution("exec-1")]
        service.stop_error = ServiceError("no responde")

        async def scenario():
            orch = await started(service, project_type="python+streamlit")
            orch.set_code("import streamlit as st", "python")
            await orch.run_code()
            session = orch.session
            first = await orch.reset()
            second = await orch.reset()
            return orch, session, first, second

        orch, session, first, second = run(scenario())
        assert first.ok and second.ok
        assert service.names().count("stop_execution") == 1
        assert session.active_resource_id is None
        assert orch.session is None
        assert orch.phase is SessionPhase.AWAITING_STEP

    def test_advancing_releases_preview(self, service: FakeService) -> None:
        """Test avanzar de paso detiene el preview."""
        service.executions = [streamlit_execution("exec-1")]
        service.next_steps = [step_json("Step 2: A")]

        async def scenario():
            orch = await started(service, project_type="python+streamlit")
            orch.set_code("import streamlit as st", "python")
            await orch.run_code()
            await orch.next_step()
            return orch

        orch = run(scenario())
        assert orch.session.active_resource_id is None
        assert service.names()[-2:] == ["next_step", "stop_execution"]

    def test_short_run_holds_no_handle(self, service: FakeService) -> None:
        """Test ejecución normal no deja proceso vivo."""
        from project_builder.core.resources import ExecutionResult

        service.executions = [ExecutionResult(execution_id="e", stdout="hola\n", exit_code=0)]

        async def scenario():
            orch = await started(service, project_type="python+streamlit")
            orch.set_code("print('hola')", "python")
            return orch, await orch.run_code()

        orch, result = run(scenario())
        assert result.ok
        assert result.execution.stdout == "hola\n"
        assert orch.session.active_resource_id is None

    def test_stop_preview_waits_for_operation_in_flight(self, service: FakeService) -> None:
        """Test detener el preview se rechaza mientras hay una llamada en vuelo."""
        service.next_steps = [step_json("Step 2: A")]
        seen = []

        async def scenario():
            orch = await started(service, project_type="python+streamlit")

            async def overlap():
                seen.append(await orch.stop_preview())

            service.hooks["next_step"] = overlap
            await orch.next_step()
            return orch

        orch = run(scenario())
        assert not seen[0].ok
        assert orch.session.current_step_index == 1

    def test_stop_preview_after_completion(self, service: FakeService) -> None:
        """Test el preview se puede detener con el proyecto completado."""
        service.next_steps = [json.dumps({"completed": True, "message": "Fin"})]

        async def scenario():
            orch = await started(service, project_type="python+streamlit")
            await orch.next_step()
            return orch, await orch.stop_preview()

        orch, result = run(scenario())
        assert result.ok
        assert result.message == "No había preview activo."
        assert orch.phase is SessionPhase.COMPLETED

    def test_empty_code_not_sent(self, service: FakeService) -> None:
        """Test sin código no se llama al servicio."""
        orch = run(started(service, level="expert"))
        result = run(orch.run_code())
        assert not result.ok
        assert "execute" not in service.names()


class TestStaleResponses:
    """Tests de respuestas que llegan después de un reset."""

    def test_next_step_after_reset_discarded(self, service: FakeService) -> None:
        """Test paso que llega tras reset no se aplica."""
        service.next_steps = [step_json("Step 2: A")]

        async def scenario():
            orch = await started(service)
            session = orch.session
            service.hooks["next_step"] = orch.reset
            result = await orch.next_step()
            return orch, session, result

        orch, session, result = run(scenario())
        assert result.stale
        assert orch.session is None
        assert len(session.steps) == 1
        assert session.current_step_index == 0
        assert session.busy is False

    def test_mismatched_session_id_discarded(self, service: FakeService) -> None:
        """Test respuesta con otro session_id."""
        service.next_steps = [step_json("Step 2: A")]
        service.echo_session_id = "otra"

        orch = run(started(service))
        result = run(orch.next_step())

        assert result.stale
        assert orch.session.current_step_index == 0

    def test_orphan_preview_is_stopped(self, service: FakeService) -> None:
        """Test app arrancada para una sesión descartada se detiene."""
        service.executions = [streamlit_execution("exec-9")]

        async def scenario():
            orch = await started(service, project_type="python+streamlit")
            orch.set_code("import streamlit as st", "python")
            service.hooks["execute"] = orch.reset
            return await orch.run_code()

        result = run(scenario())
        assert result.stale
        assert ("stop_execution", {"execution_id": "exec-9"}) in service.calls

    def test_grading_after_reset_discarded(self, service: FakeService) -> None:
        """Test corrección tras reset no avanza."""
        service.gradings = [{"correct": True, "score": 100}]

        async def scenario():
            orch = await started(service)
            await orch.complete_step()
            answer_all(orch)
            service.hooks["verify_step_completion"] = orch.reset
            return await orch.submit_quiz()

        result = run(scenario())
        assert result.stale
        assert "next_step" not in service.names()


class TestAsk:
    """Tests de preguntas libres."""

    def test_empty_question_rejected_locally(self, service: FakeService) -> None:
        """Test pregunta vacía."""
        orch = run(started(service))
        result = run(orch.ask("   "))
        assert not result.ok
        assert "ask_question" not in service.names()

    def test_answer_recorded_with_code(self, service: FakeService, config) -> None:
        """Test respuesta guardada en historial y en disco."""
        persistence = SessionPersistence(config.sessions_dir)

        async def scenario():
            orch = await started(service, persistence=persistence)
            orch.set_code("<ul></ul>", "html")
            return orch, await orch.ask("¿Cómo hago la lista?")

        orch, result = run(scenario())
        assert result.ok
        assert result.answer == service.answer
        assert service.calls[-1][1]["code"] == "<ul></ul>"
        assert orch.session.qa_history[0].question == "¿Cómo hago la lista?"
        assert persistence.load_chat_history("s-1")[0]["answer"] == service.answer


class TestResume:
    """Tests de restauración desde disco."""

    def test_resume_saved_session(self, service: FakeService, config) -> None:
        """Test guardar al avanzar y restaurar en otro orquestador."""
        persistence = SessionPersistence(config.sessions_dir)
        service.next_steps = [step_json("Step 2: A")]

        async def scenario():
            orch = await started(service, persistence=persistence)
            await orch.next_step()

        run(scenario())

        other = SessionOrchestrator(client=FakeService(), persistence=persistence)
        result = other.resume("s-1")

        assert result.ok
        assert other.session.current_step_index == 1
        assert other.phase is SessionPhase.IN_STEP
        assert other.session.active_resource_id is None

    def test_resume_unknown_session(self, service: FakeService, config) -> None:
        """Test sesión inexistente."""
        orch = SessionOrchestrator(client=service, persistence=SessionPersistence(config.sessions_dir))
        assert not orch.resume("nope").ok

    def test_resume_restores_question_history(self, service: FakeService, config) -> None:
        """Test las preguntas hechas tras el último avance se recuperan."""
        persistence = SessionPersistence(config.sessions_dir)

        async def scenario():
            orch = await started(service, persistence=persistence)
            await orch.ask("¿Cómo hago la lista?")

        run(scenario())

        other = SessionOrchestrator(client=FakeService(), persistence=persistence)
        result = other.resume("s-1")

        assert result.ok
        assert [e.question for e in other.session.qa_history] == ["¿Cómo hago la lista?"]
        assert other.session.qa_history[0].answer == service.answer

    @pytest.mark.parametrize("session_id", ["../x", "../../etc"])
    def test_resume_rejects_path_like_id(self, service: FakeService, config, session_id: str) -> None:
        """Test identificador con '..' no sale del directorio de sesiones."""
        orch = SessionOrchestrator(client=service, persistence=SessionPersistence(config.sessions_dir))

        result = orch.resume(session_id)

        assert not result.ok
        assert orch.session is None
