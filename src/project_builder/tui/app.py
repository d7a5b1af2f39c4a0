"""Aplicación de consola - Project Builder."""

import shutil
import subprocess
import sys
import tempfile
from pathlib import Path

from ..config import get_config
from ..core.orchestrator import ActionResult, SessionOrchestrator
from ..core.persistence import SessionPersistence
from ..core.state import SessionPhase
from ..designer.algorithm import AlgorithmDesigner
from ..export.manager import ExportError, ExportManager
from ..log import configure_logging
from ..service.client import BuilderClient

if sys.platform == "win32":
    import colorama
    colorama.init()

_EXTENSIONS = {"python": ".py", "html": ".html", "css": ".css", "javascript": ".js"}
_TYPE_ALIAS = {
    "python": "python+streamlit",
    "streamlit": "python+streamlit",
    "py": "python+streamlit",
    "web": "html+css+js",
    "html": "html+css+js",
    "js": "html+css+js",
}


class BuilderApp:
    """Front end de consola sobre SessionOrchestrator."""

    def __init__(self) -> None:
        self.config = get_config()
        configure_logging(self.config.log_level)
        self.client = BuilderClient()
        self.persistence = SessionPersistence(self.config.sessions_dir)
        self.exporter = ExportManager(self.config.exports_dir)
        self.orchestrator = SessionOrchestrator(client=self.client, persistence=self.persistence)
        self.designer: AlgorithmDesigner | None = None
        self.running = True

    def print_header(self) -> None:
        """Imprimir encabezado."""
        print("\033[33m" + "=" * 50 + "\033[0m")
        print("\033[33m" + "        AI-Guided Project Builder" + "\033[0m")
        print("\033[33m" + "=" * 50 + "\033[0m")
        print()

    def print_info(self, message: str) -> None:
        """Imprimir mensaje informativo."""
        print(f"\033[38;5;208mℹ {message}\033[0m")

    def print_success(self, message: str) -> None:
        """Imprimir mensaje de éxito."""
        print(f"\033[32m✓ {message}\033[0m")

    def print_error(self, message: str) -> None:
        """Imprimir mensaje de error."""
        print(f"\033[31m✗ {message}\033[0m")

    def print_tutor(self, message: str) -> None:
        """Imprimir mensaje del tutor."""
        print(f"\033[36m🤖 Tutor: {message}\033[0m")

    def get_input(self, prompt: str = "> ") -> str:
        """Obtener input del usuario."""
        try:
            return input(f"\033[38;5;208m{prompt}\033[0m").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\033[33m¡Hasta luego!\033[0m")
            return "quit"

    def report(self, result: ActionResult, success: str = "") -> bool:
        """Mostrar el resultado de una acción."""
        if result.ok:
            if result.message or success:
                self.print_success(result.message or success)
        else:
            self.print_error(result.message)
        return result.ok

    def show_step(self) -> None:
        """Mostrar el paso actual."""
        session = self.orchestrator.session
        if session is None:
            self.print_info("No hay proyecto activo. Usa 'new' para empezar.")
            return
        print(f"\033[1m{session.project_title or 'Project Builder'}\033[0m  [{session.progress_label()}]")
        step = session.current_step
        if step is None:
            self.print_info("Cargando paso... usa 'next' para pedirlo.")
            return

        print(f"\n\033[1m{step.display_title(session.current_step_index + 1)}\033[0m")
        if step.feedback:
            print(f"\n\033[35mFeedback:\033[0m {step.feedback}")
        print(f"\n{step.description}")
        if step.suggested_code:
            print("\n\033[36mCódigo sugerido:\033[0m")
            print(step.suggested_code)
        if step.expected_outcome:
            print(f"\n\033[36mResultado esperado:\033[0m {step.expected_outcome}")
        if step.quiz_question:
            print(f"\n\033[36mPara pensar:\033[0m {step.quiz_question}")
        print()

    def show_quiz(self) -> None:
        """Mostrar preguntas del quiz con las respuestas actuales."""
        quiz = self.orchestrator.quiz
        if quiz is None:
            return
        for idx, q in enumerate(quiz.questions, 1):
            print(f"\033[36mQ{idx}: {q.text}\033[0m")
            for opt_idx, opt in enumerate(q.options, 1):
                mark = "●" if quiz.answers.get(q.id) == opt else "○"
                print(f"  {mark} {opt_idx}. {opt}")
            feedback = quiz.feedback_for(q.id)
            if feedback:
                print(f"  \033[35m↳ {feedback}\033[0m")
        print("Responde con: answer <n_pregunta> <n_opción>, luego 'submit'.")

    async def run(self) -> None:
        """Ejecutar la aplicación."""
        self.print_header()
        status = await self.client.check_connection()
        if status["ok"]:
            self.print_success(f"Servicio disponible en {self.client.host}")
        else:
            self.print_error(f"Servicio no disponible en {self.client.host}: {status.get('error', '')}")
        self.print_info("Escribe 'help' para ver los comandos.")

        try:
            while self.running:
                command = self.get_input()
                if not command:
                    continue
                try:
                    await self.process_command(command)
                except Exception as e:
                    self.print_error(f"Error: {e}")
        finally:
            await self.orchestrator.close()

    async def process_command(self, command: str) -> None:
        """Procesar comando del usuario."""
        parts = command.split()
        cmd = parts[0].lower()
        args = parts[1:]

        handlers = {
            "help": self.cmd_help,
            "new": self.cmd_new,
            "resume": self.cmd_resume,
            "list": self.cmd_list,
            "status": self.cmd_status,
            "lang": self.cmd_lang,
            "edit": self.cmd_edit,
            "run": self.cmd_run,
            "stop": self.cmd_stop,
            "next": self.cmd_next,
            "done": self.cmd_done,
            "answer": self.cmd_answer,
            "submit": self.cmd_submit,
            "cancel": self.cmd_cancel,
            "ask": self.cmd_ask,
            "design": self.cmd_design,
            "export": self.cmd_export,
            "reset": self.cmd_reset,
            "quit": self.cmd_quit,
            "exit": self.cmd_quit,
            "q": self.cmd_quit,
        }

        handler = handlers.get(cmd)
        if handler is None:
            self.print_error(f"Comando desconocido: {cmd}. Usa 'help'.")
            return
        await handler(args)

    async def cmd_help(self, args) -> None:
        """Mostrar ayuda."""
        print("""
  new <python|web> <beginner|intermediate|expert> [idea]  - Nuevo proyecto
  resume <session_id> / list     - Restaurar / listar sesiones guardadas
  status                         - Paso actual
  lang <html|css|javascript|python> - Cambiar buffer activo
  edit                           - Editar el buffer activo en $EDITOR
  run / stop                     - Ejecutar código / detener preview
  next                           - Pasar al siguiente paso
  done                           - Completar paso (quiz de verificación)
  answer <n> <opción> / submit / cancel - Quiz
  ask <pregunta>                 - Preguntar al tutor
  design                         - Diseñador de algoritmos
  export                         - Exportar sesión a Markdown
  reset / quit
""")

    async def cmd_new(self, args) -> None:
        """Iniciar proyecto nuevo."""
        if len(args) < 2:
            self.print_error("Uso: new <python|web> <beginner|intermediate|expert> [idea]")
            return
        project_type = _TYPE_ALIAS.get(args[0].lower(), args[0].lower())
        idea = " ".join(args[2:]) or None
        self.print_info("Generando proyecto...")
        result = await self.orchestrator.start(project_type, args[1].lower(), idea)
        if self.report(result, "Proyecto creado"):
            self.show_step()

    async def cmd_resume(self, args) -> None:
        """Restaurar sesión guardada."""
        if not args:
            self.print_error("Uso: resume <session_id>")
            return
        if self.report(self.orchestrator.resume(args[0]), "Sesión restaurada"):
            self.show_step()

    async def cmd_list(self, args) -> None:
        """Listar sesiones guardadas."""
        sessions = self.persistence.list_sessions()
        if not sessions:
            self.print_info("No hay sesiones guardadas.")
            return
        for s in sessions:
            state = "✓" if s["completed"] else f"paso {s['step'] + 1}"
            print(f"  {s['session_id']}  {s['title']}  ({s['project_type']}, {state})")

    async def cmd_status(self, args) -> None:
        """Mostrar paso actual."""
        self.show_step()
        if self.orchestrator.phase is SessionPhase.QUIZ_PENDING:
            self.show_quiz()

    async def cmd_lang(self, args) -> None:
        """Cambiar buffer activo."""
        editor = self.orchestrator.editor
        if editor is None or not args:
            self.print_error("Uso: lang <html|css|javascript|python> (con un proyecto activo)")
            return
        self.report(self.orchestrator.set_code(editor.buffers.get(args[0], ""), args[0]))

    async def cmd_edit(self, args) -> None:
        """Abrir el buffer activo en el editor externo."""
        editor_state = self.orchestrator.editor
        if editor_state is None:
            self.print_error("No hay proyecto activo.")
            return

        language = editor_state.current_language
        editor = self.config.editor if shutil.which(self.config.editor) else "vi"
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / f"main{_EXTENSIONS.get(language, '.txt')}"
            path.write_text(editor_state.current_code(), encoding="utf-8")
            try:
                subprocess.run([editor, str(path)], check=False)
            except FileNotFoundError:
                self.print_error(f"Editor no encontrado: {editor}")
                return
            code = path.read_text(encoding="utf-8")

        self.report(self.orchestrator.set_code(code, language), f"Buffer {language} actualizado")

    async def cmd_run(self, args) -> None:
        """Ejecutar código."""
        self.print_info("Ejecutando...")
        result = await self.orchestrator.run_code(args[0] if args else None)
        execution = result.execution
        if execution is None:
            self.report(result)
            return
        if execution.startup_error:
            self.print_error(f"La app no arrancó:\n{execution.startup_error}")
        elif execution.is_long_running:
            self.print_success(f"App en ejecución: {execution.address}")
        else:
            if execution.stdout:
                print(execution.stdout)
            if execution.stderr:
                print(f"\033[31m{execution.stderr}\033[0m")
            if not execution.stdout and not execution.stderr:
                self.print_info("El código se ejecutó sin producir salida.")
            print(f"Exit code: {execution.exit_code}")

    async def cmd_stop(self, args) -> None:
        """Detener preview."""
        self.report(await self.orchestrator.stop_preview())

    async def cmd_next(self, args) -> None:
        """Siguiente paso sin quiz."""
        self.print_info("Cargando siguiente paso...")
        result = await self.orchestrator.next_step()
        if self.report(result):
            self.show_step()

    async def cmd_done(self, args) -> None:
        """Completar paso: pedir quiz."""
        if self.report(await self.orchestrator.complete_step()):
            self.show_quiz()

    async def cmd_answer(self, args) -> None:
        """Responder una pregunta por número."""
        quiz = self.orchestrator.quiz
        if quiz is None or len(args) < 2:
            self.print_error("Uso: answer <n_pregunta> <n_opción> (con un quiz activo)")
            return
        try:
            question = quiz.questions[int(args[0]) - 1]
        except (ValueError, IndexError):
            self.print_error("Pregunta inválida.")
            return

        option = " ".join(args[1:])
        if option.isdigit() and 0 < int(option) <= len(question.options):
            option = question.options[int(option) - 1]
        result = self.orchestrator.answer(question.id, option)
        if self.report(result):
            self.print_info(f"Faltan {result.unanswered} preguntas.")

    async def cmd_submit(self, args) -> None:
        """Enviar quiz."""
        self.print_info("Corrigiendo...")
        result = await self.orchestrator.submit_quiz()
        if result.grading is not None and not result.grading.correct:
            self.print_error(result.message)
            self.show_quiz()
            return
        if self.report(result):
            self.show_step()

    async def cmd_cancel(self, args) -> None:
        """Cancelar quiz."""
        self.report(self.orchestrator.cancel_quiz(), "Quiz cancelado")

    async def cmd_ask(self, args) -> None:
        """Preguntar al tutor."""
        result = await self.orchestrator.ask(" ".join(args))
        if result.ok and result.answer:
            self.print_tutor(result.answer)
        else:
            self.report(result)

    async def cmd_design(self, args) -> None:
        """Conversación con el diseñador de algoritmos."""
        if self.designer is None:
            self.designer = AlgorithmDesigner(client=self.client)
        self.print_tutor(self.designer.messages[-1]["content"])
        print("('final' para pedir el flujo completo, 'save' para exportarlo, vacío para salir)")

        while True:
            text = self.get_input(f"design [{self.designer.progress}%]> ")
            if not text or text == "quit":
                break
            if text == "save":
                try:
                    path = self.exporter.export_workflow(self.designer)
                    self.print_success(f"Flujo exportado: {path}")
                except ExportError as e:
                    self.print_error(str(e))
                continue
            if text == "final":
                if not self.designer.can_request_final:
                    self.print_error("Sigue conversando hasta llegar al 90% de progreso.")
                    continue
                reply = await self.designer.request_final()
            else:
                reply = await self.designer.send(text)
            self.print_tutor(reply if reply is not None else self.designer.messages[-1]["content"])
            if self.designer.workflow_complete:
                self.print_success("Flujo completo. Usa 'save' para exportarlo.")

    async def cmd_export(self, args) -> None:
        """Exportar sesión a Markdown."""
        session = self.orchestrator.session
        if session is None:
            self.print_error("No hay proyecto activo.")
            return
        try:
            path = self.exporter.export_session(session, Path(args[0]) if args else None)
            self.print_success(f"Sesión exportada: {path}")
        except ExportError as e:
            self.print_error(str(e))

    async def cmd_reset(self, args) -> None:
        """Empezar de cero."""
        self.report(await self.orchestrator.reset(), "Sesión reiniciada")

    async def cmd_quit(self, args) -> None:
        """Salir."""
        print("\033[33m¡Hasta luego!\033[0m")
        self.running = False
